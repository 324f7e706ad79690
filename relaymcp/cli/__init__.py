"""relaymcp command-line interface."""

"""
Currency exchange MCP server with fixed demo rates.

Launch:
    python -m relaymcp.servers.exchange
"""

import logging
import sys
from typing import Any, Dict, List

from relaymcp.servers.base import INVALID_PARAMS, ServerError, StdioToolServer, ToolHandler, text_content

USD_RATE = 0.14
HKD_RATE = 1.09


class ExchangeTool(ToolHandler):
    name = "exchange"
    description = "Convert an amount in RMB to USD and HKD"
    parameters = {
        "rmb": {"type": "number", "description": "Amount in RMB"},
    }
    required = ["rmb"]

    def handle(self, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        rmb = arguments.get("rmb")
        if isinstance(rmb, bool) or not isinstance(rmb, (int, float)):
            raise ServerError(INVALID_PARAMS, "'rmb' must be a number")

        usd = rmb * USD_RATE
        hkd = rmb * HKD_RATE
        return [text_content(f"{rmb} RMB equals:\n{usd:.2f} USD\n{hkd:.2f} HKD")]


def build_server() -> StdioToolServer:
    server = StdioToolServer("exchange-server")
    server.register(ExchangeTool())
    return server


if __name__ == "__main__":
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(levelname)s: %(message)s")
    build_server().run()

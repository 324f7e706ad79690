"""
Health data MCP server.

Exposes daily biometric summaries and rendered charts from a health
backend over stdio.

Launch:
    python -m relaymcp.servers.health

Backend base URL comes from RELAYMCP_HEALTH_BACKEND.
"""

import logging
import os
import sys
from typing import Any, Dict, List, Optional

import httpx

from relaymcp.servers.base import (
    INVALID_PARAMS,
    ResourceHandler,
    ServerError,
    StdioToolServer,
    ToolHandler,
    image_content,
    text_content,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "http://43.138.239.43:8000"
METRICS_TIMEOUT = 5.0
IMAGE_TIMEOUT = 10.0
DEFAULT_METRICS_DATE = "20250401"
DEFAULT_IMAGE_DATE = "20250418"
SAMPLE_SIZE = 5

TIMEOUT_MESSAGE = "Request timed out. The health data server is not responding."


def normalize_date(date: str) -> str:
    """``2025-04-01`` and ``20250401`` both become ``20250401``."""
    return date.replace("-", "")


def display_date(date: str) -> str:
    compact = normalize_date(date)
    if len(compact) == 8:
        return f"{compact[:4]}-{compact[4:6]}-{compact[6:]}"
    return compact


def metrics_path(device_id: str, date: str) -> str:
    return f"/get_daily_data_by_device/{device_id}/{normalize_date(date)}"


def image_path(device_id: str, date: str) -> str:
    return f"/get_png_file_by_device/{device_id}/{normalize_date(date)}"


def _require_string(arguments: Dict[str, Any], key: str, default: Optional[str] = None) -> str:
    value = arguments.get(key, default)
    if not isinstance(value, str) or not value:
        raise ServerError(INVALID_PARAMS, f"'{key}' must be a non-empty string")
    return value


def summarize_metrics(user_id: str, date: str, samples: Dict[str, Dict[str, float]]) -> str:
    """Daily averages, heart-rate range and the first few samples."""
    values = list(samples.values())
    count = len(values)

    def avg(key: str) -> float:
        return sum(m[key] for m in values) / count

    heart_rates = [m["HR"] for m in values]
    lines = [
        f"Health Summary for User {user_id} on {display_date(date)}:",
        "",
        "Daily Averages:",
        f"- Average Heart Rate: {avg('HR'):.1f} bpm (Min: {min(heart_rates):.1f}, Max: {max(heart_rates):.1f})",
        f"- Average Motion: {avg('motion'):.2f}",
        f"- Average Chest Movement Up: {avg('area_up'):.2f}",
        f"- Average Chest Movement Down: {avg('area_down'):.2f}",
        f"- Average Pressure Index: {avg('gcyy'):.2f}",
        "",
        f"Total Measurements: {count}",
        "",
        f"Sample Data (First {SAMPLE_SIZE} Measurements):",
    ]
    samples_text = "\n".join(
        f"Time: {timestamp}\nHeart Rate: {m['HR']:.1f} bpm\nMotion: {m['motion']:.2f}\n"
        for timestamp, m in list(samples.items())[:SAMPLE_SIZE]
    )
    return "\n".join(lines) + "\n" + samples_text


class HealthBackend:
    """Thin client for the biometric backend."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.base_url = (base_url or os.environ.get("RELAYMCP_HEALTH_BACKEND") or DEFAULT_BACKEND).rstrip("/")
        self._client = client or httpx.Client()

    def daily_data(self, device_id: str, date: str) -> Dict[str, Any]:
        response = self._client.get(self.base_url + metrics_path(device_id, date), timeout=METRICS_TIMEOUT)
        response.raise_for_status()
        return response.json()

    def chart(self, device_id: str, date: str) -> httpx.Response:
        response = self._client.get(self.base_url + image_path(device_id, date), timeout=IMAGE_TIMEOUT)
        response.raise_for_status()
        return response


def _is_png(response: httpx.Response) -> bool:
    return response.headers.get("content-type", "").split(";")[0].strip() == "image/png"


class HealthMetricsTool(ToolHandler):
    name = "healthMetrics"
    description = "Get user health metrics from external API"
    parameters = {
        "userId": {"type": "string", "description": "Device or user identifier"},
        "date": {"type": "string", "description": "Date in YYYYMMDD or YYYY-MM-DD format"},
    }
    required = ["userId"]

    def __init__(self, backend: HealthBackend):
        self.backend = backend

    def handle(self, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        user_id = _require_string(arguments, "userId")
        date = _require_string(arguments, "date", DEFAULT_METRICS_DATE)

        try:
            payload = self.backend.daily_data(user_id, date)
        except httpx.TimeoutException:
            return [text_content(TIMEOUT_MESSAGE)]
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching health metrics: %s", e)
            return [text_content(f"Unable to retrieve health metrics for user {user_id}. Please try again later.")]

        samples = (payload or {}).get("data") or {}
        if not samples:
            return [text_content(f"No health metrics found for user {user_id} on {display_date(date)}.")]

        try:
            return [text_content(summarize_metrics(user_id, date, samples))]
        except (KeyError, TypeError) as e:
            logger.error("Malformed health metrics: %s", e)
            return [text_content(f"Unable to retrieve health metrics for user {user_id}. Please try again later.")]


class HealthImageTool(ToolHandler):
    name = "getHealthImageData"
    description = "Download health data visualization as PNG"
    parameters = {
        "deviceId": {"type": "string", "description": "Device identifier"},
        "date": {"type": "string", "description": "Date in YYYYMMDD or YYYY-MM-DD format"},
    }
    required = ["deviceId"]

    def __init__(self, backend: HealthBackend):
        self.backend = backend

    def handle(self, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        device_id = _require_string(arguments, "deviceId")
        date = _require_string(arguments, "date", DEFAULT_IMAGE_DATE)

        try:
            response = self.backend.chart(device_id, date)
        except httpx.TimeoutException:
            return [text_content(TIMEOUT_MESSAGE)]
        except httpx.HTTPError as e:
            logger.error("Error fetching health image: %s", e)
            return [text_content(
                f"Unable to retrieve health visualization for device {device_id}. Please try again later."
            )]

        if not _is_png(response):
            return [text_content(
                f"Unable to retrieve health visualization for device {device_id} on {display_date(date)}. "
                "The server did not return a valid image."
            )]
        return [image_content(response.content, "image/png")]


class HealthImageResource(ResourceHandler):
    name = "healthImage"
    description = "Health data visualization for a device as PNG"
    uri_template = "health://image/{deviceId}/{date?}"
    mime_type = "image/png"
    parameters = {
        "deviceId": {
            "type": "string",
            "description": "Unique identifier for the health monitoring device",
        },
        "date": {
            "type": "string",
            "description": "Date for health data in YYYYMMDD format or YYYY-MM-DD format",
            "required": False,
        },
    }

    def __init__(self, backend: HealthBackend):
        self.backend = backend

    def read(self, uri: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        device_id = params.get("deviceId", "")
        date = params.get("date") or DEFAULT_IMAGE_DATE

        try:
            response = self.backend.chart(device_id, date)
        except httpx.TimeoutException:
            raise ServerError(INVALID_PARAMS, TIMEOUT_MESSAGE)
        except httpx.HTTPError:
            raise ServerError(
                INVALID_PARAMS,
                f"Unable to retrieve health visualization for device {device_id}. Please try again later.",
            )

        if not _is_png(response):
            raise ServerError(
                INVALID_PARAMS,
                f"Server did not return a valid image for device {device_id} on {normalize_date(date)}",
            )
        blob = image_content(response.content)["data"]
        return [{"uri": uri, "mimeType": "image/png", "blob": blob}]


def build_server(backend: Optional[HealthBackend] = None) -> StdioToolServer:
    backend = backend or HealthBackend()
    server = StdioToolServer("health-server")
    server.register(HealthMetricsTool(backend))
    server.register(HealthImageTool(backend))
    server.register_resource(HealthImageResource(backend))
    return server


if __name__ == "__main__":
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(levelname)s: %(message)s")
    build_server().run()

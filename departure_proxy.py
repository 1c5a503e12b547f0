#!/usr/bin/env python3
# EnTur departure time proxy.

import logging
import os
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, Response

import entur_departures
from entur_departures import DEFAULT_JOURNEY_PLANNER_URL, DepartureQueryError, EnturConfig

load_dotenv()

log = logging.getLogger("departure_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)


def load_config() -> EnturConfig:
    config = EnturConfig(
        journey_planner_api_url=os.getenv("ENTUR_JOURNEY_PLANNER_URL", DEFAULT_JOURNEY_PLANNER_URL),
        et_client_name=os.getenv("ET_CLIENT_NAME", "departure-proxy"),
        connect_timeout_sec=env_float("ENTUR_CONNECT_TIMEOUT_SEC", 3.0),
        read_timeout_sec=env_float("ENTUR_READ_TIMEOUT_SEC", 10.0),
        timezone=os.getenv("DEPARTURE_TIMEZONE") or None,
    )
    # Fail at startup on an unknown zone name, not on the first request.
    if config.timezone:
        ZoneInfo(config.timezone)
    return config


def error_response(status: int, code: str, message: str) -> Response:
    payload: Dict[str, Any] = {"error": {"code": code, "message": message}}
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


def departure_time(stop_id: str, date: str, line_id: str) -> Response:
    config: EnturConfig = current_app.config["ENTUR"]
    try:
        departures = entur_departures.fetch_departure_times(stop_id, date, line_id, config)
    except DepartureQueryError as exc:
        return error_response(exc.status, exc.code, str(exc))
    except Exception:
        log.exception("Unexpected error serving departure times")
        return error_response(500, "internal_error", "Unexpected error")
    return jsonify(departures)


def create_app(config: Optional[EnturConfig] = None) -> Flask:
    app = Flask(__name__)
    app.config["ENTUR"] = config if config is not None else load_config()
    app.after_request(add_common_headers)
    for prefix in ("", "/api"):
        app.add_url_rule(
            f"{prefix}/departureTime/<stop_id>/<date>/<line_id>",
            endpoint=f"departure_time{prefix.replace('/', '_')}",
            view_func=departure_time,
            methods=["GET", "POST"],
        )
    return app


app = create_app()


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)

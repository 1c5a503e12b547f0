# Departure times for one stop and line from the EnTur journey planner.

import datetime
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
import logging
import re
from typing import Any, Dict, List, Optional, TypedDict
from zoneinfo import ZoneInfo

import requests

log = logging.getLogger(__name__)

DEFAULT_JOURNEY_PLANNER_URL = "https://api.entur.io/journey-planner/v3/graphql"
NUMBER_OF_DEPARTURES = 100

# Three-digit seconds field, e.g. "2025-12-02T00:00:000.000Z".
STRICT_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{3}\.\d{3}Z", re.ASCII)
DATE_ONLY_RE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)

DEPARTURES_QUERY = """
query DepartureTimes(
  $stopId: String!
  $startTime: DateTime
  $lines: [ID]
  $numberOfDepartures: Int
) {
  stopPlace(id: $stopId) {
    name
    estimatedCalls(
      arrivalDeparture: departures
      startTime: $startTime
      whiteListed: {lines: $lines}
      numberOfDepartures: $numberOfDepartures
      includeCancelledTrips: true
    ) {
      expectedDepartureTime
    }
  }
}
"""

JsonDict = Dict[str, Any]


class DepartureTime(TypedDict):
    expectedDepartureTime: str


class EstimatedCall(TypedDict, total=False):
    expectedDepartureTime: str


class StopPlace(TypedDict, total=False):
    name: str
    estimatedCalls: List[EstimatedCall]


class GraphQLData(TypedDict, total=False):
    stopPlace: Optional[StopPlace]


class GraphQLResponse(TypedDict, total=False):
    data: GraphQLData
    errors: List[JsonDict]


@dataclass(frozen=True)
class EnturConfig:
    journey_planner_api_url: str = DEFAULT_JOURNEY_PLANNER_URL
    et_client_name: str = "departure-proxy"
    connect_timeout_sec: float = 3.0
    read_timeout_sec: float = 10.0
    # IANA name; None renders times in the process local timezone.
    timezone: Optional[str] = None

    @property
    def tzinfo(self) -> Optional[datetime.tzinfo]:
        if not self.timezone:
            return None
        return ZoneInfo(self.timezone)


class DepartureQueryError(Exception):
    status = 500
    code = "internal_error"


class InvalidArgument(DepartureQueryError):
    status = 400
    code = "invalid_argument"

    def __init__(self, message: str = "quayId, date and line must be provided"):
        super().__init__(message)


class InvalidDateFormat(DepartureQueryError):
    status = 400
    code = "invalid_date_format"

    def __init__(self, message: str = "Invalid date format. Must be ISO 8601"):
        super().__init__(message)


class UpstreamGraphQLError(DepartureQueryError):
    status = 502
    code = "upstream_graphql_error"

    def __init__(self, errors: List[JsonDict]):
        super().__init__("Error in GraphQL response")
        self.errors = errors


class UpstreamRequestError(DepartureQueryError):
    status = 502
    code = "upstream_error"

    def __init__(self, message: str = "Error fetching departure times from EnTur GraphQL API"):
        super().__init__(message)


session = requests.Session()


def parse_datetime(value: str) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 or RFC 2822 date/time into an aware datetime.

    A bare date is midnight UTC. Any other value without an offset is taken
    to be in the process local timezone. Returns None when neither format
    applies.
    """
    text = value.strip()
    iso_text = text[:-1] + "+00:00" if text[-1:] in ("Z", "z") else text
    try:
        parsed = datetime.datetime.fromisoformat(iso_text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            # RFC 2822 "-0000" means UTC with unknown local offset.
            return parsed.replace(tzinfo=datetime.timezone.utc)
        return parsed

    if parsed.tzinfo is None:
        if DATE_ONLY_RE.fullmatch(text):
            return parsed.replace(tzinfo=datetime.timezone.utc)
        try:
            return parsed.astimezone()
        except (OverflowError, OSError):
            return None
    return parsed


def normalize_date(value: str) -> str:
    """Reserialize a loosely formatted date as ISO-8601 UTC with milliseconds."""
    parsed = parse_datetime(value)
    if parsed is None:
        log.error("Invalid date format %r. Must be ISO 8601", value)
        raise InvalidDateFormat()
    try:
        utc = parsed.astimezone(datetime.timezone.utc)
    except (OverflowError, ValueError) as exc:
        log.error("Invalid date format %r. Must be ISO 8601", value)
        raise InvalidDateFormat() from exc
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_time_of_day(iso_timestamp: str, tz: Optional[datetime.tzinfo] = None) -> str:
    """Return the HH:MM:SS wall-clock time of an ISO timestamp in ``tz``."""
    parsed = datetime.datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    return parsed.astimezone(tz).strftime("%H:%M:%S")


def build_departure_query(stop_id: str, date: str, line_id: str) -> JsonDict:
    return {
        "query": DEPARTURES_QUERY,
        "variables": {
            "stopId": stop_id,
            "startTime": date,
            "lines": [line_id],
            "numberOfDepartures": NUMBER_OF_DEPARTURES,
        },
    }


def fetch_departure_times(
    stop_id: str,
    date: str,
    line_id: str,
    config: EnturConfig,
    *,
    http: Optional[requests.Session] = None,
) -> List[DepartureTime]:
    """Fetch expected departure times of ``line_id`` from ``stop_id``.

    Raises InvalidArgument or InvalidDateFormat before any request is made,
    UpstreamGraphQLError when the API answers with an ``errors`` list and
    UpstreamRequestError for any other upstream failure.
    """
    if not stop_id or not date or not line_id:
        log.error("quayId, date and line must be provided")
        raise InvalidArgument()

    # Checked once; a reformatted date is sent as is.
    if not STRICT_DATE_RE.fullmatch(date):
        log.warning("Date %r is not in the expected format, attempting to convert", date)
        date = normalize_date(date)

    log.info("Fetching departure times for stop %s, date %s, line %s", stop_id, date, line_id)

    headers = {
        "Content-Type": "application/json",
        "ET-Client-Name": config.et_client_name,
    }
    client = http if http is not None else session

    try:
        resp = client.post(
            config.journey_planner_api_url,
            json=build_departure_query(stop_id, date, line_id),
            headers=headers,
            timeout=(config.connect_timeout_sec, config.read_timeout_sec),
        )
        body: GraphQLResponse = resp.json()
    except (requests.RequestException, ValueError) as exc:
        log.error("Error making request to EnTur GraphQL API: %s", exc)
        raise UpstreamRequestError() from exc

    if isinstance(body, dict) and body.get("errors") is not None:
        log.error("Error in GraphQL response: %s", body["errors"])
        raise UpstreamGraphQLError(body["errors"])

    if resp.status_code >= 400:
        log.error("EnTur GraphQL API returned HTTP %s", resp.status_code)
        raise UpstreamRequestError()

    tz = config.tzinfo
    try:
        calls = body["data"]["stopPlace"]["estimatedCalls"]
        departures: List[DepartureTime] = [
            {"expectedDepartureTime": to_time_of_day(call["expectedDepartureTime"], tz)}
            for call in calls
        ]
    except (AttributeError, KeyError, OverflowError, TypeError, ValueError) as exc:
        log.error("Unexpected response from EnTur GraphQL API: %r", exc)
        raise UpstreamRequestError() from exc

    log.info(
        "Fetched %d departure times for stop %s, date %s, line %s",
        len(departures),
        stop_id,
        date,
        line_id,
    )
    return departures

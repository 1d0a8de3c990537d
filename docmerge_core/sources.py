"""
Named Source Fetching
Loads external record lists over HTTP to attach as {{@Alias}} sources.
"""

import logging
from typing import Dict, List, Mapping, Optional

import requests

from .errors import SourceFetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
RECORD_KEYS = ('records', 'data', 'items')


def fetch_named_source(url: str, timeout: int = DEFAULT_TIMEOUT,
                       session: Optional[requests.Session] = None,
                       alias: Optional[str] = None) -> List:
    """
    GET a JSON list of records.

    Args:
        url: Endpoint returning a JSON array, or an object holding one under
            "records", "data" or "items"
        timeout: Request timeout in seconds
        session: Optional requests session (auth headers, connection reuse)
        alias: Name used in error messages; defaults to the URL

    Returns:
        List of records

    Raises:
        SourceFetchError: on timeout, HTTP error, invalid JSON or a non-list payload
    """
    alias = alias or url
    http = session or requests

    try:
        response = http.get(url, headers={'Accept': 'application/json'}, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except requests.exceptions.Timeout as e:
        raise SourceFetchError(alias, f"request timed out after {timeout}s") from e
    except requests.exceptions.RequestException as e:
        raise SourceFetchError(alias, f"request failed: {e}") from e
    except ValueError as e:
        raise SourceFetchError(alias, f"response is not valid JSON: {e}") from e

    records = extract_records(payload)
    if records is None:
        raise SourceFetchError(alias, f"expected a list of records, got {type(payload).__name__}")

    logger.info("Fetched %d records for source '%s'", len(records), alias)
    return records


def extract_records(payload) -> Optional[List]:
    """Pull the record list out of a decoded JSON payload, or None"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in RECORD_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return None


def fetch_named_sources(urls: Mapping[str, str], timeout: int = DEFAULT_TIMEOUT,
                        session: Optional[requests.Session] = None) -> Dict[str, List]:
    """
    Fetch several named sources, in order.

    Args:
        urls: Alias -> URL

    Returns:
        Alias -> list of records
    """
    return {
        alias: fetch_named_source(url, timeout=timeout, session=session, alias=alias)
        for alias, url in urls.items()
    }

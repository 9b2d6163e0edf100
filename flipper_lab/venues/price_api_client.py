"""
HTTP client for the price-history GraphQL API.

**Conceptual**: A thin wrapper around `requests` that knows how to POST a
GraphQL query to the price API and turn HTTP failures into specific
exceptions. It returns plain JSON structures; turning them into Bars is the
job of PriceApiProvider.

**Queries used**:
  - `{stock(id: 19002) {id, name, list, priceData{date, open, high, low, close, volume}}}`
  - `{stocks(type: "stock") {id, name, list}}`

**Error handling**:
  - 401/403 -> PriceApiAuthenticationError
  - 404 or a null stock -> PriceApiNotFoundError
  - 429 -> PriceApiRateLimitError
  - 5xx -> PriceApiServerError
  - GraphQL `errors`, other 4xx, bad JSON, connection failures -> PriceApiError
  - Timeouts re-raise requests.Timeout with a clearer message
"""

from typing import Any, Optional

import requests

from flipper_lab.config.settings import PriceApiSettings
from flipper_lab.data.schemas import InstrumentId


DEFAULT_STOCK_FIELDS = 'id, name, list, priceData{date, open, high, low, close, volume}'
DEFAULT_UNIVERSE_FIELDS = 'id, name, list'


class PriceApiError(Exception):
    """Base exception for price API client errors."""
    pass


class PriceApiAuthenticationError(PriceApiError):
    """
    Raised when the API rejects the credentials (401/403).

    **Recovery**: Check PRICE_API_TOKEN in .env.
    """
    pass


class PriceApiNotFoundError(PriceApiError):
    """Raised when the requested instrument does not exist."""
    pass


class PriceApiRateLimitError(PriceApiError):
    """
    Raised on 429 Too Many Requests.

    **Recovery**: Lower CONCURRENT_TESTS / TIMELINE_CONCURRENCY.
    """
    pass


class PriceApiServerError(PriceApiError):
    """Raised when the API returns a 5xx error."""
    pass


class PriceApiClient:
    """
    Thin HTTP client for the price API.

    Args:
        settings: API URL, endpoint, optional bearer token and timeout.
    """

    def __init__(self, settings: PriceApiSettings):
        self.settings = settings
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "flipper_lab/1.0",
        })
        if settings.auth_token:
            self.session.headers["Authorization"] = f"Bearer {settings.auth_token}"

    @property
    def url(self) -> str:
        return self.settings.api_url.rstrip('/') + self.settings.api_endpoint

    def query(self, query: str) -> dict[str, Any]:
        """
        POST a GraphQL query and return its `data` object.

        Raises:
            PriceApiError (or a subclass): On HTTP, GraphQL or parsing errors.
            requests.Timeout: If the request exceeds the configured timeout.
        """
        try:
            response = self.session.post(
                self.url,
                json={"query": query},
                timeout=self.settings.timeout_seconds,
            )
        except requests.Timeout as e:
            raise requests.Timeout(
                f"Request to price API timed out after {self.settings.timeout_seconds}s. "
                f"Check network connection or increase PRICE_API_TIMEOUT_SECONDS."
            ) from e
        except requests.ConnectionError as e:
            raise PriceApiError(
                f"Failed to connect to price API at {self.url}. "
                f"Check network connection and PRICE_API_URL."
            ) from e
        except requests.RequestException as e:
            raise PriceApiError(f"HTTP request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise PriceApiAuthenticationError(
                f"Authentication failed (status {status}). "
                f"Check your PRICE_API_TOKEN. Response: {response.text}"
            )
        if status == 404:
            raise PriceApiNotFoundError(f"Endpoint or resource not found. Response: {response.text}")
        if status == 429:
            raise PriceApiRateLimitError(
                f"Rate limit exceeded. Slow down requests. Response: {response.text}"
            )
        if status >= 500:
            raise PriceApiServerError(
                f"Price API server error (status {status}). Response: {response.text}"
            )
        if 400 <= status < 500:
            raise PriceApiError(
                f"Client error (status {status}). Query may be malformed. Response: {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise PriceApiError(f"Failed to parse JSON response: {e}. Response: {response.text}")

        if payload.get("errors"):
            messages = [error.get("message", str(error)) for error in payload["errors"]]
            raise PriceApiError(f"GraphQL errors: {messages}")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise PriceApiError(f"Response missing 'data' object. Keys: {list(payload.keys())}")
        return data

    def fetch_stock(self, instrument_id: InstrumentId, field_string: str = DEFAULT_STOCK_FIELDS) -> dict[str, Any]:
        """
        Fetch one instrument with the requested fields.

        Raises:
            ValueError: If instrument_id is empty.
            PriceApiNotFoundError: If the API returns no stock for the id.
        """
        if instrument_id is None or str(instrument_id).strip() == "":
            raise ValueError("instrument_id cannot be empty")

        data = self.query(f'{{stock(id: {_graphql_literal(instrument_id)}) {{{field_string}}}}}')
        stock = data.get("stock")
        if stock is None:
            raise PriceApiNotFoundError(f"Instrument '{instrument_id}' not found")
        return stock

    def fetch_stocks(self, field_string: str = DEFAULT_UNIVERSE_FIELDS, stock_type: Optional[str] = "stock") -> list[dict[str, Any]]:
        """Fetch the instrument universe (optionally filtered by type)."""
        arguments = f'(type: "{stock_type}")' if stock_type else ''
        data = self.query(f'{{stocks{arguments} {{{field_string}}}}}')
        stocks = data.get("stocks")
        if not isinstance(stocks, list):
            raise PriceApiError(f"Expected 'stocks' to be a list, got {type(stocks)}")
        return stocks

    def close(self):
        """Close the HTTP session and release pooled connections."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _graphql_literal(instrument_id: InstrumentId) -> str:
    # Numeric ids are sent bare, anything else as a quoted string.
    text = str(instrument_id).strip()
    return text if text.isdigit() else '"' + text.replace('"', '\\"') + '"'

"""Client for the browser-automation scraping service."""
from typing import Optional, Dict, Any
import requests

from scrapequeue import settings
from scrapequeue.logging_conf import logger
from scrapequeue.models import ScrapedRecord, ScrapeResult, utcnow

# Codes the collaborator uses to say retrying will not help
NON_RETRYABLE_CODES = {"UNSUPPORTED_JURISDICTION", "UNSUPPORTED_CATEGORY"}


class CollaboratorError(Exception):
    """A failed scrape call.

    Attributes:
        code: Machine-readable code (collaborator-provided or local, e.g. TIMEOUT)
        retryable: False only when the collaborator signals a permanent condition
        retry_after: Seconds the collaborator asked us to back off, if any
    """

    def __init__(self, code: str, message: str, retryable: Optional[bool] = None,
                 retry_after: Optional[float] = None):
        self.code = code
        self.message = message
        self.retryable = code not in NON_RETRYABLE_CODES if retryable is None else retryable
        self.retry_after = retry_after
        super().__init__(f"{code}: {message}")


class ScraperClient:
    """Calls the scraper service for one (jurisdiction, category, cell) at a time."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 result_limit: Optional[int] = None):
        self.base_url = (base_url or settings.SCRAPER_BASE_URL or "").rstrip("/")
        self.timeout = timeout or settings.SCRAPER_TIMEOUT_SECONDS
        self.result_limit = result_limit or settings.SCRAPER_RESULT_LIMIT
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if settings.SCRAPER_API_TOKEN:
            self.session.headers["Authorization"] = f"Bearer {settings.SCRAPER_API_TOKEN}"

    def scrape(self, jurisdiction: str, category: str, cell_id: str, source: str) -> ScrapeResult:
        """
        Scrape professionals for one cell.

        Args:
            jurisdiction: Jurisdiction code, e.g. "FL"
            category: Profession category, e.g. "real_estate"
            cell_id: Geographic cell, e.g. a ZIP code
            source: Source identifier stamped on the returned records

        Returns:
            ScrapeResult with parsed records and the collaborator's source label

        Raises:
            CollaboratorError on any non-success response, timeout or malformed payload
        """
        payload = {
            "jurisdiction": jurisdiction,
            "category": category,
            "cell_id": cell_id,
            "limit": self.result_limit,
        }
        data = self._request("/scrape", payload)

        if data.get("error"):
            raise self._error_from_body(data, 200)

        raw_records = data.get("records")
        if not isinstance(raw_records, list):
            raise CollaboratorError("MALFORMED_RESPONSE", "response has no 'records' list")

        source_label = str(data.get("source_label") or "unknown")
        records = []
        for raw in raw_records:
            record = self._parse_record(raw, source, jurisdiction, category, cell_id, source_label)
            if record:
                records.append(record)

        if len(records) < len(raw_records):
            logger.warning(f"Dropped {len(raw_records) - len(records)} records without native_id for {source}:{jurisdiction}-{cell_id}")
        logger.info(f"Scraped {len(records)} records for {source}:{jurisdiction}-{cell_id} from {source_label}")
        return ScrapeResult(records=records, source_label=source_label)

    def _request(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the collaborator and return the decoded JSON body."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise CollaboratorError("TIMEOUT", f"no response within {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise CollaboratorError("CONNECTION_ERROR", str(e)) from e

        if response.status_code == 429:
            retry_after = self._retry_after(response)
            raise CollaboratorError("RATE_LIMITED", f"collaborator rate limited (retry after {retry_after}s)",
                                    retryable=True, retry_after=retry_after)

        try:
            data = response.json()
        except ValueError as e:
            if response.ok:
                raise CollaboratorError("MALFORMED_RESPONSE", "response body is not JSON") from e
            raise CollaboratorError(f"HTTP_{response.status_code}", response.text[:200]) from e

        if not isinstance(data, dict):
            raise CollaboratorError("MALFORMED_RESPONSE", "response body is not a JSON object")

        if not response.ok:
            raise self._error_from_body(data, response.status_code)
        return data

    def _error_from_body(self, data: Dict[str, Any], status_code: int) -> CollaboratorError:
        error = data.get("error")
        if isinstance(error, dict):
            code = error.get("code") or f"HTTP_{status_code}"
            message = error.get("message") or "scrape failed"
        else:
            code = data.get("code") or f"HTTP_{status_code}"
            message = str(error or "scrape failed")
        return CollaboratorError(str(code), str(message))

    def _retry_after(self, response: requests.Response) -> Optional[float]:
        try:
            return float(response.headers.get("Retry-After", ""))
        except ValueError:
            return None

    def _parse_record(self, raw: Any, source: str, jurisdiction: str, category: str,
                      cell_id: str, source_label: str) -> Optional[ScrapedRecord]:
        if not isinstance(raw, dict):
            return None
        native_id = _text(raw.get("native_id")) or _text(raw.get("license_number"))
        if not native_id:
            return None
        contact = raw.get("contact") if isinstance(raw.get("contact"), dict) else {}
        return ScrapedRecord(
            source=source,
            native_id=native_id,
            name=_text(raw.get("name")),
            status=_text(raw.get("status")) or _text(raw.get("license_status")),
            company=_text(raw.get("company")),
            city=_text(raw.get("city")),
            phone=_text(raw.get("phone")) or _text(contact.get("phone")),
            email=_text(raw.get("email")) or _text(contact.get("email")),
            jurisdiction=jurisdiction,
            category=category,
            cell_id=cell_id,
            source_label=source_label,
            raw=raw,
            scraped_at=utcnow(),
        )


def _text(value: Any) -> Optional[str]:
    """Scalar payload values as text; nested objects and lists are not column values."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return str(value).strip() or None

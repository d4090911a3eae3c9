"""CalDAV transport.

Fetches raw iCalendar objects for a sync window from a CalDAV server (or a
plain ``.ics`` subscription) over ``httpx``. The transport never retries;
transient failures surface as :class:`NetworkError` so that the caller can
decide on backoff.

Discovery order:
1. PROPFIND Depth 0 on the configured URL. A calendar collection is used
   directly.
2. Otherwise ``calendar-home-set`` (directly or via
   ``current-user-principal``) is listed with PROPFIND Depth 1.
3. Each collection is queried with a ``calendar-query`` REPORT carrying a
   VEVENT ``time-range`` filter. Servers that reject the REPORT are read via
   a PROPFIND listing plus ``calendar-multiget`` (or per-object GET) and
   filtered client-side.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote, urlsplit, urlunsplit

import httpx

from calsync.calendar.errors import AuthError, NetworkError, ProtocolError, TransportError
from calsync.calendar.ics import overlaps_window
from calsync.calendar.models import (
    CalendarSource,
    RemoteCalendarObject,
    SyncCredentials,
    SyncWindow,
)

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "calsync/0.1"
MULTIGET_BATCH_SIZE = 100
# REPORT statuses that mean "this server cannot run the query", not "access denied".
REPORT_UNSUPPORTED_STATUS_CODES = frozenset({400, 403, 405, 415, 501})

_XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}

_PROPFIND_DISCOVERY = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype/>
    <D:displayname/>
    <D:current-user-principal/>
    <C:calendar-home-set/>
    <C:supported-calendar-component-set/>
  </D:prop>
</D:propfind>"""

_PROPFIND_HOME_SET = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <C:calendar-home-set/>
  </D:prop>
</D:propfind>"""

_PROPFIND_COLLECTIONS = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype/>
    <D:displayname/>
    <C:supported-calendar-component-set/>
  </D:prop>
</D:propfind>"""

_PROPFIND_OBJECTS = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:">
  <D:prop>
    <D:resourcetype/>
    <D:getetag/>
    <D:getcontenttype/>
  </D:prop>
</D:propfind>"""


def _q(namespace: str, name: str) -> str:
    return f"{{{namespace}}}{name}"


def _caldav_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def calendar_query_body(window: SyncWindow) -> str:
    """Build a ``calendar-query`` REPORT body selecting VEVENTs that overlap *window*."""
    return (
        '<?xml version="1.0" encoding="utf-8" ?>\n'
        '<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">\n'
        "  <D:prop>\n"
        "    <D:getetag/>\n"
        "    <C:calendar-data/>\n"
        "  </D:prop>\n"
        "  <C:filter>\n"
        '    <C:comp-filter name="VCALENDAR">\n'
        '      <C:comp-filter name="VEVENT">\n'
        f'        <C:time-range start="{_caldav_timestamp(window.start)}" '
        f'end="{_caldav_timestamp(window.end)}"/>\n'
        "      </C:comp-filter>\n"
        "    </C:comp-filter>\n"
        "  </C:filter>\n"
        "</C:calendar-query>"
    )


def calendar_multiget_body(hrefs: list[str]) -> str:
    """Build a ``calendar-multiget`` REPORT body for *hrefs*."""
    href_lines = "\n".join(f"  <D:href>{_xml_escape(href)}</D:href>" for href in hrefs)
    return (
        '<?xml version="1.0" encoding="utf-8" ?>\n'
        '<C:calendar-multiget xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">\n'
        "  <D:prop>\n"
        "    <D:getetag/>\n"
        "    <C:calendar-data/>\n"
        "  </D:prop>\n"
        f"{href_lines}\n"
        "</C:calendar-multiget>"
    )


def _xml_escape(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def redact_url(url: str) -> str:
    """Strip userinfo from *url* before it reaches a log line."""
    parts = urlsplit(url)
    if parts.username is None and parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def is_subscription_url(url: str) -> bool:
    """True for plain iCalendar feeds (``.ics`` paths or ``webcal://`` links)."""
    parts = urlsplit(url)
    return parts.scheme.lower() in {"webcal", "webcals"} or parts.path.lower().endswith(".ics")


def base_url_candidates(url: str) -> list[str]:
    """URLs tried in order when looking for the CalDAV entry point.

    The configured URL, the same URL with a trailing slash (unless it already
    has one or names an ``.ics`` file) and ``{origin}/.well-known/caldav``.
    """
    candidates: list[str] = []

    def _add(candidate: str) -> None:
        if candidate not in candidates:
            candidates.append(candidate)

    stripped = url.strip()
    _add(stripped)
    parts = urlsplit(stripped)
    if not parts.path.endswith("/") and not parts.path.lower().endswith(".ics"):
        _add(urlunsplit((parts.scheme, parts.netloc, f"{parts.path}/", parts.query, "")))
    if parts.scheme and parts.netloc and ".well-known" not in parts.path:
        _add(urlunsplit((parts.scheme, parts.netloc, "/.well-known/caldav", "", "")))
    return candidates


def should_skip_collection(url: str, display_name: str | None) -> bool:
    """Skip scheduling inboxes/outboxes, the bare calendar home and unnamed containers."""
    normalized = unquote(urlsplit(url).path).lower()
    if normalized.endswith("/calendars/"):
        return True
    if normalized.endswith("/inbox/") or normalized.endswith("/outbox/"):
        return True
    if not display_name and normalized.endswith("/"):
        return True
    return False


@dataclass(frozen=True)
class CalendarCollection:
    """One discovered calendar collection."""

    url: str
    display_name: str | None = None


@dataclass
class DavResponse:
    """One ``<D:response>`` entry of a multistatus body."""

    href: str
    status: int | None = None
    props: dict[str, ET.Element] = field(default_factory=dict)

    def text(self, tag: str) -> str | None:
        element = self.props.get(tag)
        if element is None or element.text is None:
            return None
        value = element.text.strip()
        return value or None

    def child_href(self, tag: str) -> str | None:
        element = self.props.get(tag)
        if element is None:
            return None
        href = element.findtext(_q(DAV_NS, "href"))
        return href.strip() if href and href.strip() else None

    def has_resourcetype(self, tag: str) -> bool:
        resourcetype = self.props.get(_q(DAV_NS, "resourcetype"))
        return resourcetype is not None and resourcetype.find(tag) is not None

    def supports_vevent(self) -> bool:
        supported = self.props.get(_q(CALDAV_NS, "supported-calendar-component-set"))
        if supported is None:
            return True
        names = {
            (comp.get("name") or "").upper() for comp in supported.findall(_q(CALDAV_NS, "comp"))
        }
        return not names or "VEVENT" in names


def _status_code(status_line: str | None) -> int | None:
    if not status_line:
        return None
    parts = status_line.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def parse_multistatus(content: bytes | str, *, url: str | None = None) -> list[DavResponse]:
    """Parse a ``207 Multi-Status`` body into :class:`DavResponse` records.

    Only properties from ``200`` propstat blocks are kept.

    Raises:
        ProtocolError: The body is not XML or not a DAV multistatus document.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ProtocolError(f"Malformed multistatus response: {exc}", url=url) from exc
    if root.tag != _q(DAV_NS, "multistatus"):
        raise ProtocolError(f"Expected DAV multistatus, got {root.tag!r}", url=url)

    responses: list[DavResponse] = []
    for node in root.findall(_q(DAV_NS, "response")):
        href = (node.findtext(_q(DAV_NS, "href")) or "").strip()
        if not href:
            continue
        entry = DavResponse(href=href, status=_status_code(node.findtext(_q(DAV_NS, "status"))))
        for propstat in node.findall(_q(DAV_NS, "propstat")):
            code = _status_code(propstat.findtext(_q(DAV_NS, "status")))
            if code is not None and not 200 <= code < 300:
                continue
            prop = propstat.find(_q(DAV_NS, "prop"))
            if prop is None:
                continue
            for child in prop:
                entry.props[child.tag] = child
        responses.append(entry)
    return responses


def _safe_error_message(response: httpx.Response) -> str:
    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error body"


class _CandidateNotFound(Exception):
    """Discovery got a 404 for one base URL candidate."""


def _build_auth(credentials: SyncCredentials | None) -> httpx.Auth | None:
    if credentials is None:
        return None
    if credentials.scheme == "digest":
        return httpx.DigestAuth(credentials.username, credentials.password)
    return httpx.BasicAuth(credentials.username, credentials.password)


class CalDavTransport:
    """Reads calendar objects from CalDAV servers and iCalendar feeds."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._user_agent = user_agent

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> CalDavTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_objects(
        self,
        source: CalendarSource,
        window: SyncWindow,
        credentials: SyncCredentials | None,
    ) -> list[RemoteCalendarObject]:
        """Return every remote object of *source* relevant to *window*.

        Raises:
            AuthError: Credentials rejected during discovery.
            NetworkError: 5xx, timeout or connection failure.
            ProtocolError: The server does not speak CalDAV at the given URL.
        """
        auth = _build_auth(credentials)
        if is_subscription_url(source.url):
            return await self._fetch_subscription(source.url, auth)

        collections = await self.discover_collections(source.url, auth=auth)
        objects: list[RemoteCalendarObject] = []
        denied = 0
        for collection in collections:
            try:
                fetched = await self._fetch_collection(collection, window, auth)
            except AuthError as exc:
                denied += 1
                logger.warning(
                    "Skipping restricted calendar %s (status=%s)",
                    redact_url(collection.url),
                    exc.status_code,
                )
                continue
            except ProtocolError as exc:
                if exc.status_code != 404:
                    raise
                logger.warning("Skipping vanished calendar %s", redact_url(collection.url))
                continue
            logger.info(
                "Retrieved %d calendar objects from %s",
                len(fetched),
                collection.display_name or redact_url(collection.url),
            )
            objects.extend(fetched)

        if collections and denied == len(collections):
            raise AuthError(
                "Access denied to every calendar collection",
                status_code=403,
                url=redact_url(source.url),
            )
        return objects

    async def discover_collections(
        self,
        url: str,
        *,
        auth: httpx.Auth | None = None,
    ) -> list[CalendarCollection]:
        """Resolve *url* to the calendar collections it designates."""
        last_candidate = url
        for candidate in base_url_candidates(url):
            last_candidate = candidate
            try:
                return await self._discover_from(candidate, auth)
            except _CandidateNotFound:
                logger.debug(
                    "No CalDAV endpoint at %s; trying next candidate", redact_url(candidate)
                )
                continue
        raise ProtocolError(
            "No CalDAV endpoint found for the configured URL",
            status_code=404,
            url=redact_url(last_candidate),
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discover_from(
        self,
        url: str,
        auth: httpx.Auth | None,
    ) -> list[CalendarCollection]:
        response = await self._request(
            "PROPFIND", url, auth=auth, depth="0", body=_PROPFIND_DISCOVERY
        )
        if response.status_code == 404:
            raise _CandidateNotFound(url)
        self._raise_for_status(response, url)
        base_url = str(response.url)
        entries = parse_multistatus(response.content, url=redact_url(url))
        if not entries:
            raise ProtocolError("Empty multistatus response during discovery", url=redact_url(url))

        first = entries[0]
        if first.has_resourcetype(_q(CALDAV_NS, "calendar")):
            display_name = first.text(_q(DAV_NS, "displayname"))
            return [CalendarCollection(url=base_url, display_name=display_name)]

        home_href = first.child_href(_q(CALDAV_NS, "calendar-home-set"))
        if home_href is None:
            principal_href = first.child_href(_q(DAV_NS, "current-user-principal"))
            if principal_href is not None:
                home_href = await self._home_set_from_principal(
                    self._join(base_url, principal_href), auth
                )

        home_url = self._join(base_url, home_href) if home_href else base_url
        return await self._list_collections(home_url, auth)

    async def _home_set_from_principal(
        self,
        principal_url: str,
        auth: httpx.Auth | None,
    ) -> str | None:
        response = await self._request(
            "PROPFIND", principal_url, auth=auth, depth="0", body=_PROPFIND_HOME_SET
        )
        self._raise_for_status(response, principal_url)
        for entry in parse_multistatus(response.content, url=redact_url(principal_url)):
            href = entry.child_href(_q(CALDAV_NS, "calendar-home-set"))
            if href is not None:
                return self._join(str(response.url), href)
        return None

    async def _list_collections(
        self,
        home_url: str,
        auth: httpx.Auth | None,
    ) -> list[CalendarCollection]:
        response = await self._request(
            "PROPFIND", home_url, auth=auth, depth="1", body=_PROPFIND_COLLECTIONS
        )
        self._raise_for_status(response, home_url)
        base_url = str(response.url)

        collections: list[CalendarCollection] = []
        seen: set[str] = set()
        for entry in parse_multistatus(response.content, url=redact_url(home_url)):
            if not entry.has_resourcetype(_q(CALDAV_NS, "calendar")):
                continue
            if not entry.supports_vevent():
                continue
            url = self._join(base_url, entry.href)
            display_name = entry.text(_q(DAV_NS, "displayname"))
            if should_skip_collection(url, display_name):
                logger.info("Skipping system calendar %s", redact_url(url))
                continue
            if url in seen:
                continue
            seen.add(url)
            collections.append(CalendarCollection(url=url, display_name=display_name))
        return collections

    # ------------------------------------------------------------------
    # Object retrieval
    # ------------------------------------------------------------------

    async def _fetch_collection(
        self,
        collection: CalendarCollection,
        window: SyncWindow,
        auth: httpx.Auth | None,
    ) -> list[RemoteCalendarObject]:
        response = await self._request(
            "REPORT",
            collection.url,
            auth=auth,
            depth="1",
            body=calendar_query_body(window),
        )
        if response.status_code in REPORT_UNSUPPORTED_STATUS_CODES:
            logger.info(
                "Server rejected calendar-query on %s (status=%d); listing objects instead",
                redact_url(collection.url),
                response.status_code,
            )
            return await self._fetch_collection_unfiltered(collection, window, auth)
        self._raise_for_status(response, collection.url)
        return self._objects_from_multistatus(response, collection)

    async def _fetch_collection_unfiltered(
        self,
        collection: CalendarCollection,
        window: SyncWindow,
        auth: httpx.Auth | None,
    ) -> list[RemoteCalendarObject]:
        listing = await self._request(
            "PROPFIND", collection.url, auth=auth, depth="1", body=_PROPFIND_OBJECTS
        )
        self._raise_for_status(listing, collection.url)
        base_url = str(listing.url)
        collection_path = urlsplit(base_url).path.rstrip("/")

        hrefs: list[str] = []
        for entry in parse_multistatus(listing.content, url=redact_url(collection.url)):
            if entry.has_resourcetype(_q(DAV_NS, "collection")):
                continue
            if urlsplit(self._join(base_url, entry.href)).path.rstrip("/") == collection_path:
                continue
            hrefs.append(entry.href)

        objects: list[RemoteCalendarObject] = []
        multiget_supported = True
        for offset in range(0, len(hrefs), MULTIGET_BATCH_SIZE):
            batch = hrefs[offset : offset + MULTIGET_BATCH_SIZE]
            if multiget_supported:
                response = await self._request(
                    "REPORT",
                    collection.url,
                    auth=auth,
                    depth="1",
                    body=calendar_multiget_body(batch),
                )
                if response.status_code in REPORT_UNSUPPORTED_STATUS_CODES:
                    multiget_supported = False
                else:
                    self._raise_for_status(response, collection.url)
                    objects.extend(self._objects_from_multistatus(response, collection))
                    continue
            for href in batch:
                fetched = await self._get_object(self._join(base_url, href), href, collection, auth)
                if fetched is not None:
                    objects.append(fetched)

        kept = [obj for obj in objects if overlaps_window(obj.ics, window)]
        logger.debug(
            "Client-side window filter kept %d of %d objects from %s",
            len(kept),
            len(objects),
            redact_url(collection.url),
        )
        return kept

    async def _get_object(
        self,
        url: str,
        href: str,
        collection: CalendarCollection,
        auth: httpx.Auth | None,
    ) -> RemoteCalendarObject | None:
        response = await self._request("GET", url, auth=auth)
        if response.status_code == 404:
            logger.debug("Calendar object vanished during listing: %s", redact_url(url))
            return None
        self._raise_for_status(response, url)
        return RemoteCalendarObject(
            href=href,
            ics=response.text,
            etag=response.headers.get("ETag"),
            calendar_url=collection.url,
        )

    async def _fetch_subscription(
        self,
        url: str,
        auth: httpx.Auth | None,
    ) -> list[RemoteCalendarObject]:
        parts = urlsplit(url)
        scheme = {"webcal": "http", "webcals": "https"}.get(parts.scheme.lower(), parts.scheme)
        fetch_url = urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))

        response = await self._request("GET", fetch_url, auth=auth)
        self._raise_for_status(response, fetch_url)
        if "BEGIN:VCALENDAR" not in response.text.upper():
            raise ProtocolError(
                "Subscription URL did not return iCalendar data",
                status_code=response.status_code,
                url=redact_url(url),
            )
        return [
            RemoteCalendarObject(
                href=url,
                ics=response.text,
                etag=response.headers.get("ETag"),
                calendar_url=url,
            )
        ]

    def _objects_from_multistatus(
        self,
        response: httpx.Response,
        collection: CalendarCollection,
    ) -> list[RemoteCalendarObject]:
        objects: list[RemoteCalendarObject] = []
        for entry in parse_multistatus(response.content, url=redact_url(collection.url)):
            calendar_data = entry.text(_q(CALDAV_NS, "calendar-data"))
            if calendar_data is None:
                if entry.status is not None and entry.status != 200:
                    logger.debug("Object %s reported status %s", entry.href, entry.status)
                continue
            objects.append(
                RemoteCalendarObject(
                    href=entry.href,
                    ics=calendar_data,
                    etag=entry.text(_q(DAV_NS, "getetag")),
                    calendar_url=collection.url,
                )
            )
        return objects

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _join(base_url: str, href: str) -> str:
        return str(httpx.URL(base_url).join(href))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        auth: httpx.Auth | None,
        depth: str | None = None,
        body: str | None = None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"User-Agent": self._user_agent}
        if body is not None:
            headers.update(_XML_HEADERS)
        if depth is not None:
            headers["Depth"] = depth
        try:
            return await self._http_client.request(
                method,
                url,
                content=body.encode("utf-8") if body is not None else None,
                headers=headers,
                auth=auth,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"CalDAV {method} timed out", url=redact_url(url)
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"CalDAV {method} failed: {type(exc).__name__}", url=redact_url(url)
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        safe_url = redact_url(url)
        method = response.request.method
        if status in {401, 403}:
            raise AuthError(
                f"CalDAV {method} was rejected with status {status}",
                status_code=status,
                url=safe_url,
            )
        if status >= 500 or status == 429:
            raise NetworkError(
                f"CalDAV {method} failed with status {status}: {_safe_error_message(response)}",
                status_code=status,
                url=safe_url,
            )
        raise ProtocolError(
            f"CalDAV {method} returned unexpected status {status}",
            status_code=status,
            url=safe_url,
        )


__all__ = [
    "CALDAV_NS",
    "DAV_NS",
    "CalDavTransport",
    "CalendarCollection",
    "DavResponse",
    "TransportError",
    "base_url_candidates",
    "calendar_multiget_body",
    "calendar_query_body",
    "is_subscription_url",
    "parse_multistatus",
    "redact_url",
    "should_skip_collection",
]

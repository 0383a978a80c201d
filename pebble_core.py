# coding: utf-8
"""
Business logic for Pebble Viewer: query state, the HTTP store client,
list/selection controllers and the pure value/pagination renderers.

Nothing in here imports Qt. Network access goes through a transport object
and timers through a scheduler object, so the whole browse state machine
can be driven from tests without a window or a server.
"""
import json
import logging
import math
import os
import binascii
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
DEBOUNCE_MS = 300
DEFAULT_SERVER_URL = "http://localhost:8080"

MODE_PREFIX = "prefix"
MODE_SUBSTRING = "substring"
SEARCH_MODES = (MODE_PREFIX, MODE_SUBSTRING)

VIEW_RAW = "raw"
VIEW_HEX = "hex"
VIEW_STRUCTURED = "structured"
DISPLAY_MODES = (VIEW_RAW, VIEW_HEX, VIEW_STRUCTURED)

INVALID_JSON = "Invalid JSON"
SUBSTRING_WARNING = ("Contains search scans ALL keys on the server.\n"
                     "This may be slow for large databases.")

CONFIG_FILE = Path(os.environ.get("PEBBLE_VIEWER_CONFIG", Path.home() / ".pebble_viewer_config.json"))
THEMES = ("System", "Light", "Dark")


# ==============================================================================
#  Errors
# ==============================================================================

class StoreClientError(Exception):
    pass


class NetworkError(StoreClientError):
    """Transport failure or an unexpected HTTP status."""


class ParseError(StoreClientError):
    """Response body is not the shape the API promises."""


class NotFoundError(StoreClientError):
    """The requested key no longer exists."""


class DecodeError(StoreClientError):
    """A value body could not be parsed as JSON for the structured view."""


class SettingsError(Exception):
    pass


# ==============================================================================
#  Records
# ==============================================================================

@dataclass(frozen=True)
class KeyListResult:
    keys: Tuple[str, ...]
    total: int
    offset: int = 0
    limit: int = PAGE_SIZE


@dataclass(frozen=True)
class StatsRecord:
    db_path: str
    total_keys: int
    db_size_bytes: int = 0


@dataclass(frozen=True)
class ValueRecord:
    key: str
    raw_value: str
    hex_value: str
    size_bytes: int

    def decoded_bytes(self) -> bytes:
        return binascii.unhexlify(self.hex_value)


@dataclass
class SessionState:
    """State that lives for the whole client session.

    Created once when the client starts and never reset afterwards; a new
    session (restarting the app) starts with a fresh instance.
    """
    substring_warning_shown: bool = False

    def acknowledge_substring_mode(self) -> bool:
        """Return True the first time substring mode is chosen, False after."""
        if self.substring_warning_shown:
            return False
        self.substring_warning_shown = True
        return True


# ==============================================================================
#  Query state
# ==============================================================================

@dataclass
class QueryState:
    text: str = ""
    mode: str = MODE_PREFIX
    offset: int = 0
    limit: int = PAGE_SIZE
    total_count: int = 0

    @property
    def page_index(self) -> int:
        return self.offset // self.limit

    @property
    def page_count(self) -> int:
        return max(1, math.ceil(self.total_count / self.limit))

    def set_text(self, text: str):
        self.text = text
        self.reset_page()

    def set_mode(self, mode: str):
        if mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode: {mode!r}")
        self.mode = mode
        self.reset_page()

    def reset_page(self):
        self.offset = 0

    def can_next(self) -> bool:
        return (self.page_index + 1) * self.limit < self.total_count

    def can_prev(self) -> bool:
        return self.offset > 0

    def next_page(self) -> bool:
        if not self.can_next():
            return False
        self.offset += self.limit
        return True

    def prev_page(self) -> bool:
        if not self.can_prev():
            return False
        self.offset -= self.limit
        return True

    def set_total(self, total: int):
        self.total_count = max(0, int(total))
        # a shrinking result set must not leave us past the last page
        last_offset = (self.page_count - 1) * self.limit
        if self.offset > last_offset:
            self.offset = last_offset

    def as_query(self) -> Dict[str, Any]:
        return {"text": self.text, "mode": self.mode, "offset": self.offset, "limit": self.limit}


# ==============================================================================
#  Store client
# ==============================================================================

# transport.get(url, callback) with callback(status, body, error)
ResponseCallback = Callable[[Optional[int], bytes, Optional[str]], None]


def _load_json_object(body: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(f"Malformed JSON response: {e}")
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _require(data: Dict[str, Any], name: str, kind) -> Any:
    value = data.get(name)
    # bool is an int subclass; the API never sends booleans
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ParseError(f"Field '{name}' missing or not {kind.__name__}")
    return value


def parse_stats(body: bytes) -> StatsRecord:
    data = _load_json_object(body)
    size = data.get("db_size_bytes", 0)
    if not isinstance(size, int) or isinstance(size, bool):
        raise ParseError("Field 'db_size_bytes' not int")
    return StatsRecord(
        db_path=_require(data, "db_path", str),
        total_keys=max(0, _require(data, "total_keys", int)),
        db_size_bytes=size,
    )


def parse_keys(body: bytes, query: Optional[Dict[str, Any]] = None) -> KeyListResult:
    data = _load_json_object(body)
    query = query or {}
    keys = data.get("keys")
    # the server encodes an empty slice as null
    if keys is None:
        keys = []
    if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
        raise ParseError("Field 'keys' must be a list of strings")
    offset = data.get("offset", query.get("offset", 0))
    limit = data.get("limit", query.get("limit", PAGE_SIZE))
    if not isinstance(offset, int) or not isinstance(limit, int):
        raise ParseError("Fields 'offset'/'limit' must be integers")
    return KeyListResult(
        keys=tuple(keys),
        total=max(0, _require(data, "total", int)),
        offset=offset,
        limit=limit,
    )


def parse_value(body: bytes) -> ValueRecord:
    data = _load_json_object(body)
    record = ValueRecord(
        key=_require(data, "key", str),
        raw_value=_require(data, "value", str),
        hex_value=_require(data, "value_hex", str),
        size_bytes=_require(data, "size", int),
    )
    hex_value = record.hex_value
    if len(hex_value) % 2 or hex_value != hex_value.lower():
        raise ParseError("Field 'value_hex' must be lower-case hex of even length")
    try:
        decoded = record.decoded_bytes()
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"Field 'value_hex' is not hex: {e}")
    if len(decoded) != record.size_bytes:
        raise ParseError(f"value_hex decodes to {len(decoded)} bytes, size says {record.size_bytes}")
    return record


class StoreClient:
    """Read-only client for the three endpoints of the store API.

    Every fetch issues exactly one request. There is no caching and no retry:
    a failure is handed to ``on_error`` and the caller decides what to keep.
    """

    def __init__(self, transport, base_url: str = DEFAULT_SERVER_URL):
        self.transport = transport
        self.base_url = base_url.rstrip("/")

    def stats_url(self) -> str:
        return f"{self.base_url}/api/stats"

    def keys_url(self, query: Dict[str, Any]) -> str:
        params = urlencode({
            "q": query.get("text", ""),
            "mode": query.get("mode", MODE_PREFIX),
            "offset": int(query.get("offset", 0)),
            "limit": int(query.get("limit", PAGE_SIZE)),
        })
        return f"{self.base_url}/api/keys?{params}"

    def value_url(self, key: str) -> str:
        return f"{self.base_url}/api/key/{quote(key, safe='')}"

    def fetch_stats(self, on_success: Callable[[StatsRecord], None],
                    on_error: Callable[[StoreClientError], None]):
        self._get(self.stats_url(), parse_stats, on_success, on_error)

    def fetch_keys(self, query: Dict[str, Any],
                   on_success: Callable[[KeyListResult], None],
                   on_error: Callable[[StoreClientError], None]):
        self._get(self.keys_url(query), lambda body: parse_keys(body, query), on_success, on_error)

    def fetch_value(self, key: str,
                    on_success: Callable[[ValueRecord], None],
                    on_error: Callable[[StoreClientError], None]):
        self._get(self.value_url(key), parse_value, on_success, on_error, not_found_key=key)

    def _get(self, url: str, parser, on_success, on_error, not_found_key: Optional[str] = None):
        logger.debug("GET %s", url)

        def _done(status: Optional[int], body: bytes, error: Optional[str]):
            try:
                result = self._interpret(url, status, body, error, parser, not_found_key)
            except StoreClientError as e:
                on_error(e)
                return
            on_success(result)

        self.transport.get(url, _done)

    @staticmethod
    def _interpret(url, status, body, error, parser, not_found_key):
        if error is not None or status is None:
            raise NetworkError(f"GET {url} failed: {error or 'no response'}")
        if not 200 <= status < 300:
            if not_found_key is not None:
                raise NotFoundError(f"Key not found: {not_found_key!r} (HTTP {status})")
            raise NetworkError(f"GET {url} returned HTTP {status}")
        return parser(body)


# ==============================================================================
#  Debounce
# ==============================================================================

class Debouncer:
    """Run ``action`` once input has been quiet for ``quiet_ms``.

    ``scheduler`` provides ``call_later(delay_ms, fn) -> handle`` and
    ``cancel(handle)``. At most one timer is ever pending.
    """

    def __init__(self, scheduler, action: Callable[[], None], quiet_ms: int = DEBOUNCE_MS):
        self.scheduler = scheduler
        self.action = action
        self.quiet_ms = quiet_ms
        self._handle = None

    def trigger(self):
        self.cancel()
        self._handle = self.scheduler.call_later(self.quiet_ms, self._fire)

    def cancel(self):
        if self._handle is not None:
            self.scheduler.cancel(self._handle)
            self._handle = None

    def _fire(self):
        self._handle = None
        self.action()


# ==============================================================================
#  Controllers
# ==============================================================================

class ListController:
    """Turns query changes into key-list fetches.

    Only the response to the most recently issued request is applied; older
    responses that arrive late are dropped. Failures keep the previous list.
    """

    def __init__(self, client: StoreClient, scheduler, session: Optional[SessionState] = None,
                 quiet_ms: int = DEBOUNCE_MS):
        self.client = client
        self.session = session or SessionState()
        self.state = QueryState()
        self.result: Optional[KeyListResult] = None
        self.stats: Optional[StatsRecord] = None
        self.on_keys: List[Callable[["ListController"], None]] = []
        self.on_stats: List[Callable[["ListController"], None]] = []
        self._seq = 0
        self._stats_seq = 0
        self._debouncer = Debouncer(scheduler, self.fetch_keys, quiet_ms)

    @property
    def keys(self) -> Tuple[str, ...]:
        return self.result.keys if self.result else ()

    # --- user actions ---
    def start(self):
        self.fetch_stats()
        self.fetch_keys()

    def search_text_changed(self, text: str):
        self.state.set_text(text)
        self._debouncer.trigger()

    def search_mode_changed(self, mode: str) -> bool:
        """Apply a mode change and fetch at once.

        Returns True when the caller should show the one-time substring warning.
        """
        self.state.set_mode(mode)
        warn = mode == MODE_SUBSTRING and self.session.acknowledge_substring_mode()
        self._debouncer.cancel()
        self.fetch_keys()
        return warn

    def next_page(self) -> bool:
        if not self.state.next_page():
            return False
        self._debouncer.cancel()
        self.fetch_keys()
        return True

    def prev_page(self) -> bool:
        if not self.state.prev_page():
            return False
        self._debouncer.cancel()
        self.fetch_keys()
        return True

    def refresh(self):
        self._debouncer.cancel()
        self.fetch_stats()
        self.fetch_keys()

    def restart(self):
        """Browse a different data source from its first page."""
        self.state.reset_page()
        self.refresh()

    # --- fetches ---
    def fetch_keys(self) -> int:
        self._seq += 1
        token = self._seq
        query = self.state.as_query()
        self.client.fetch_keys(
            query,
            lambda result: self._apply_keys(token, result),
            lambda err: self._keys_failed(token, err),
        )
        return token

    def fetch_stats(self) -> int:
        self._stats_seq += 1
        token = self._stats_seq
        self.client.fetch_stats(
            lambda stats: self._apply_stats(token, stats),
            lambda err: self._stats_failed(token, err),
        )
        return token

    def _apply_keys(self, token: int, result: KeyListResult):
        if token != self._seq:
            logger.debug("Dropping stale key list (token %d, latest %d)", token, self._seq)
            return
        previous_offset = self.state.offset
        self.state.set_total(result.total)
        if self.state.offset != previous_offset:
            # the page we asked for is gone; show the new last page instead
            logger.debug("Offset %d past end of %d keys, refetching", previous_offset, result.total)
            self.fetch_keys()
            return
        self.result = result
        for listener in self.on_keys:
            listener(self)

    def _keys_failed(self, token: int, err: StoreClientError):
        if token != self._seq:
            logger.debug("Ignoring failure of stale key list request %d: %s", token, err)
            return
        logger.warning("Failed to fetch keys: %s", err)

    def _apply_stats(self, token: int, stats: StatsRecord):
        if token != self._stats_seq:
            logger.debug("Dropping stale stats (token %d, latest %d)", token, self._stats_seq)
            return
        self.stats = stats
        for listener in self.on_stats:
            listener(self)

    def _stats_failed(self, token: int, err: StoreClientError):
        if token != self._stats_seq:
            return
        logger.warning("Failed to fetch stats: %s", err)


NO_SELECTION = "no_selection"
LOADING = "loading"
LOADED = "loaded"


class SelectionController:
    def __init__(self, client: StoreClient):
        self.client = client
        self.status = NO_SELECTION
        self.key: Optional[str] = None
        self.record: Optional[ValueRecord] = None
        self.display_mode = VIEW_RAW
        self.on_change: List[Callable[["SelectionController"], None]] = []

    def select(self, key: str) -> bool:
        if key == self.key and self.status in (LOADING, LOADED):
            return False
        self.key = key
        self.record = None
        self.status = LOADING
        self._notify()
        self.client.fetch_value(
            key,
            lambda record: self._loaded(key, record),
            lambda err: self._failed(key, err),
        )
        return True

    def clear(self):
        self.key = None
        self.record = None
        self.status = NO_SELECTION
        self._notify()

    def set_display_mode(self, mode: str):
        if mode not in DISPLAY_MODES:
            raise ValueError(f"Unknown display mode: {mode!r}")
        self.display_mode = mode
        self._notify()

    def rendering(self) -> Optional[str]:
        if self.record is None:
            return None
        return render_value(self.record, self.display_mode)

    def _loaded(self, key: str, record: ValueRecord):
        if key != self.key or self.status != LOADING:
            logger.debug("Dropping stale value for %r", key)
            return
        self.record = record
        self.status = LOADED
        self._notify()

    def _failed(self, key: str, err: StoreClientError):
        if key != self.key or self.status != LOADING:
            logger.debug("Ignoring failure of stale value fetch for %r: %s", key, err)
            return
        if isinstance(err, NotFoundError):
            logger.info("%s", err)
        else:
            logger.warning("Failed to fetch value for %r: %s", key, err)
        self.clear()

    def _notify(self):
        for listener in self.on_change:
            listener(self)


# ==============================================================================
#  Pure views
# ==============================================================================

def hex_pairs(hex_value: str) -> str:
    return " ".join(hex_value[i:i + 2] for i in range(0, len(hex_value), 2))


def _reject_constant(name: str):
    raise DecodeError(f"{name} is not valid JSON")


def pretty_json(text: str) -> str:
    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
        return json.dumps(parsed, indent=2, ensure_ascii=False, allow_nan=False)
    except ValueError as e:
        raise DecodeError(str(e))


def render_value(record: ValueRecord, mode: str) -> str:
    if mode == VIEW_RAW:
        return record.raw_value
    if mode == VIEW_HEX:
        return hex_pairs(record.hex_value)
    if mode == VIEW_STRUCTURED:
        try:
            return pretty_json(record.raw_value)
        except DecodeError:
            return INVALID_JSON
    raise ValueError(f"Unknown display mode: {mode!r}")


def format_size(size: int) -> str:
    return "1 byte" if size == 1 else f"{size} bytes"


def format_disk_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024


@dataclass(frozen=True)
class PageInfo:
    page: int
    page_count: int
    label: str
    prev_enabled: bool
    next_enabled: bool


def pagination_view(state: QueryState) -> PageInfo:
    page = state.page_index + 1
    page_count = state.page_count
    return PageInfo(
        page=page,
        page_count=page_count,
        label=f"Page {page} of {page_count}",
        prev_enabled=state.offset > 0,
        next_enabled=page < page_count,
    )


# ==============================================================================
#  Settings
# ==============================================================================

def default_settings() -> Dict[str, Any]:
    return {
        "connections": [{"name": "default", "url": DEFAULT_SERVER_URL}],
        "current_connection_name": "default",
        "theme": "System",
    }


def load_settings(path: Path = CONFIG_FILE) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        return default_settings()
    try:
        with open(path, "r", encoding="utf-8") as f:
            settings = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        raise SettingsError(f"Could not load or parse config file: {e}")
    if not isinstance(settings, dict):
        raise SettingsError("Config file must contain a JSON object")
    connections = settings.get("connections", [])
    if not isinstance(connections, list) or not all(
            isinstance(c, dict) and isinstance(c.get("name"), str) and isinstance(c.get("url"), str)
            for c in connections):
        raise SettingsError("'connections' must be a list of {name, url} objects")
    theme = settings.get("theme", "System")
    return {
        "connections": connections,
        "current_connection_name": settings.get("current_connection_name"),
        "theme": theme if theme in THEMES else "System",
    }


def save_settings(settings: Dict[str, Any], path: Path = CONFIG_FILE):
    path = Path(path)
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(settings, f, indent=4, ensure_ascii=False)
    except IOError as e:
        raise SettingsError(f"Error saving settings: {e}")


def upsert_profile(profiles: List[Dict[str, str]], name: str, url: str) -> Tuple[List[Dict[str, str]], bool]:
    """Add or replace the profile called ``name``; the flag says whether it is new."""
    profile = {"name": name, "url": url or DEFAULT_SERVER_URL}
    if any(p["name"] == name for p in profiles):
        return [profile if p["name"] == name else p for p in profiles], False
    return profiles + [profile], True


def remove_profile(profiles: List[Dict[str, str]], name: str) -> List[Dict[str, str]]:
    return [p for p in profiles if p["name"] != name]


def initial_server_url(settings: Dict[str, Any], argv: Optional[List[str]] = None) -> str:
    """Pick the URL to browse on startup: argv, then env, then saved profile."""
    if argv and len(argv) > 1 and argv[1].strip():
        return argv[1].strip()
    env_url = os.environ.get("PEBBLE_VIEWER_URL", "").strip()
    if env_url:
        return env_url
    current = settings.get("current_connection_name")
    for conn in settings.get("connections", []):
        if conn.get("name") == current:
            return conn["url"]
    if settings.get("connections"):
        return settings["connections"][0]["url"]
    return DEFAULT_SERVER_URL

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .domains import looks_like_host, normalize_domain
from .errors import FetchFailed, public_error_message
from .logutil import log_exception_throttled
from .models import CustomRule, FilterList, ListFormat, ParsedRule, parsed_rule_from_dict


logger = logging.getLogger(__name__)


USER_AGENT = "filterforge/0.1 (+filter-list updater)"


@dataclass(frozen=True)
class ListStatus:
    key: str
    name: str
    url: str
    category: str
    format: str
    enabled: bool
    last_success: int
    last_attempt: int
    last_error: str
    bytes: int
    rules: int
    parse_failures: int
    stale: bool


@dataclass(frozen=True)
class _ListSource:
    name: str
    url: str
    category: str
    format: str = "adblock"
    enabled: bool = True


_DEFAULT_LISTS: Dict[str, _ListSource] = {
    "easylist": _ListSource("EasyList", "https://easylist.to/easylist/easylist.txt", "ads"),
    "easyprivacy": _ListSource("EasyPrivacy", "https://easylist.to/easylist/easyprivacy.txt", "trackers"),
    "malware": _ListSource(
        "Malware Domains",
        "https://malware-filter.gitlab.io/malware-filter/urlhaus-filter-online.txt",
        "malware",
    ),
    "social": _ListSource("Fanboy Social", "https://easylist.to/easylist/fanboy-social.txt", "social"),
    "nocoin": _ListSource(
        "NoCoin",
        "https://raw.githubusercontent.com/hoshsadiq/adblock-nocoin-list/master/nocoin.txt",
        "cryptominers",
    ),
    "annoyances": _ListSource(
        "Fanboy Annoyances", "https://easylist.to/easylist/fanboy-annoyance.txt", "annoyances", enabled=False
    ),
    "stevenblack": _ListSource(
        "StevenBlack Hosts",
        "https://raw.githubusercontent.com/StevenBlack/hosts/master/hosts",
        "unified",
        format="hosts",
    ),
}


BLOCKING_LEVELS: Dict[str, Tuple[str, ...]] = {
    "minimal": ("ads", "cryptominers", "malware"),
    "moderate": ("ads", "trackers", "social", "cryptominers", "malware", "unified"),
    "aggressive": ("ads", "trackers", "social", "cryptominers", "malware", "unified", "annoyances"),
}


_DEFAULT_SETTINGS = {
    # Global protection switch.
    "enabled": "1",
    "blocking_level": "moderate",
    # Explicit category list (comma separated); empty means "use blocking_level".
    "categories": "",
}


SITE_KINDS = ("whitelist", "blacklist")


def _now() -> int:
    return int(time.time())


def _is_db_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "database is locked" in str(exc).lower()


def run_with_db_lock_retry(fn, *, attempts: int = 8, base_sleep_seconds: float = 0.5):
    """Run `fn` with exponential backoff on transient SQLite lock errors."""
    last_exc: BaseException | None = None
    for i in range(max(1, int(attempts))):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            if not _is_db_locked(exc):
                raise
            time.sleep(min(30.0, float(base_sleep_seconds) * (2 ** i)))
    if last_exc is not None:
        raise last_exc
    return None


class FilterListStore:
    """SQLite persistence for filter lists, their cached parsed rules, and user data."""

    def __init__(
        self,
        db_path: str = "/var/lib/filterforge/filterforge.db",
        update_interval_seconds: int = 6 * 60 * 60,
        max_download_bytes: int = 64 * 1024 * 1024,
        seed_defaults: bool = True,
        retry_interval_seconds: int = 5 * 60,
    ):
        self.db_path = db_path
        self.update_interval_seconds = int(update_interval_seconds)
        self.retry_interval_seconds = int(retry_interval_seconds)
        self.max_download_bytes = int(max_download_bytes)
        self.seed_defaults = seed_defaults
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        d = os.path.dirname(self.db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filter_lists (
                    key TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    url TEXT NOT NULL,
                    category TEXT NOT NULL,
                    format TEXT NOT NULL DEFAULT 'adblock',
                    enabled INTEGER NOT NULL DEFAULT 0,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    last_success INTEGER NOT NULL DEFAULT 0,
                    last_attempt INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT NOT NULL DEFAULT '',
                    bytes INTEGER NOT NULL DEFAULT 0,
                    rules INTEGER NOT NULL DEFAULT 0,
                    parse_failures INTEGER NOT NULL DEFAULT 0,
                    stale INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filter_list_rules (
                    key TEXT PRIMARY KEY REFERENCES filter_lists(key) ON DELETE CASCADE,
                    rules_json TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS custom_rules (
                    id INTEGER PRIMARY KEY,
                    pattern TEXT NOT NULL,
                    type TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    resource_types TEXT NOT NULL DEFAULT '',
                    domains TEXT NOT NULL DEFAULT ''
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS site_lists (
                    kind TEXT NOT NULL,
                    domain TEXT NOT NULL,
                    added_ts INTEGER NOT NULL,
                    PRIMARY KEY(kind, domain)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    k TEXT PRIMARY KEY,
                    v TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    k TEXT PRIMARY KEY,
                    v TEXT NOT NULL
                );
                """
            )

            if self.seed_defaults:
                for order, (key, src) in enumerate(_DEFAULT_LISTS.items()):
                    conn.execute(
                        """
                        INSERT INTO filter_lists(key, name, url, category, format, enabled, sort_order)
                        VALUES(?,?,?,?,?,?,?)
                        ON CONFLICT(key) DO UPDATE SET url=excluded.url, name=excluded.name;
                        """,
                        (key, src.name, src.url, src.category, src.format, 1 if src.enabled else 0, order),
                    )

            for k, v in _DEFAULT_SETTINGS.items():
                conn.execute("INSERT OR IGNORE INTO settings(k, v) VALUES(?,?)", (k, v))

            conn.execute("INSERT OR IGNORE INTO meta(k, v) VALUES('settings_version','1')")
            conn.execute("INSERT OR IGNORE INTO meta(k, v) VALUES('refresh_requested','0')")
        self._initialized = True

    # -- meta / key-value -------------------------------------------------

    def _get_meta(self, conn: sqlite3.Connection, key: str, default: str = "") -> str:
        row = conn.execute("SELECT v FROM meta WHERE k=?", (key,)).fetchone()
        return str(row[0]) if row and row[0] is not None else default

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT INTO meta(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
            (key, value),
        )

    def get_meta(self, key: str, default: str = "") -> str:
        self.init_db()
        with self._connect() as conn:
            return self._get_meta(conn, key, default)

    def set_meta(self, key: str, value: str) -> None:
        self.init_db()
        with self._connect() as conn:
            self._set_meta(conn, key, value)

    def _bump_version(self, conn: sqlite3.Connection) -> None:
        try:
            v = int(self._get_meta(conn, "settings_version", "1") or 1)
        except ValueError:
            v = 1
        self._set_meta(conn, "settings_version", str(v + 1))

    def get_settings_version(self) -> int:
        try:
            return int(self.get_meta("settings_version", "1") or 1)
        except ValueError:
            return 1

    def request_refresh_now(self) -> None:
        self.set_meta("refresh_requested", str(_now()))

    def get_refresh_requested(self) -> int:
        try:
            return int(self.get_meta("refresh_requested", "0") or 0)
        except ValueError:
            return 0

    # -- settings ----------------------------------------------------------

    def get_settings(self) -> Dict[str, Any]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT k, v FROM settings").fetchall()
            m = {str(r[0]): str(r[1]) for r in rows}

        enabled = (m.get("enabled") or _DEFAULT_SETTINGS["enabled"]).strip() == "1"
        level = (m.get("blocking_level") or _DEFAULT_SETTINGS["blocking_level"]).strip()
        if level not in BLOCKING_LEVELS:
            level = _DEFAULT_SETTINGS["blocking_level"]
        categories = [c for c in (m.get("categories") or "").split(",") if c.strip()]
        return {
            "enabled": enabled,
            "blocking_level": level,
            "categories": [c.strip() for c in categories],
        }

    def enabled_categories(self) -> List[str]:
        s = self.get_settings()
        if s["categories"]:
            return list(s["categories"])
        return list(BLOCKING_LEVELS[s["blocking_level"]])

    def set_settings(
        self,
        *,
        enabled: Optional[bool] = None,
        blocking_level: Optional[str] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> None:
        if blocking_level is not None and blocking_level not in BLOCKING_LEVELS:
            raise ValueError(f"Unknown blocking level {blocking_level!r}.")
        self.init_db()
        with self._connect() as conn:
            if enabled is not None:
                conn.execute(
                    "INSERT INTO settings(k,v) VALUES('enabled',?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                    ("1" if enabled else "0",),
                )
            if blocking_level is not None:
                conn.execute(
                    "INSERT INTO settings(k,v) VALUES('blocking_level',?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                    (blocking_level,),
                )
            if categories is not None:
                cleaned = []
                for c in categories:
                    c = (c or "").strip().lower()
                    if c and c not in cleaned:
                        cleaned.append(c)
                conn.execute(
                    "INSERT INTO settings(k,v) VALUES('categories',?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                    (",".join(cleaned),),
                )
            self._bump_version(conn)

    # -- filter lists -------------------------------------------------------

    def _status_from_row(self, r: sqlite3.Row) -> ListStatus:
        return ListStatus(
            key=r["key"],
            name=str(r["name"] or r["key"]),
            url=r["url"],
            category=r["category"],
            format=r["format"],
            enabled=bool(r["enabled"]),
            last_success=int(r["last_success"]),
            last_attempt=int(r["last_attempt"]),
            last_error=str(r["last_error"] or ""),
            bytes=int(r["bytes"]),
            rules=int(r["rules"]),
            parse_failures=int(r["parse_failures"]),
            stale=bool(r["stale"]),
        )

    def list_statuses(self) -> List[ListStatus]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM filter_lists ORDER BY sort_order, key").fetchall()
            return [self._status_from_row(r) for r in rows]

    def get_status(self, key: str) -> Optional[ListStatus]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM filter_lists WHERE key=?", (key,)).fetchone()
        return self._status_from_row(row) if row else None

    def add_list(
        self,
        key: str,
        url: str,
        category: str,
        *,
        name: str = "",
        fmt: str = "adblock",
        enabled: bool = True,
    ) -> str:
        safe = "".join([c for c in (key or "") if c.isalnum() or c in ("-", "_")])
        if not safe:
            raise ValueError("List key must contain letters, digits, '-' or '_'.")
        if safe in _DEFAULT_LISTS:
            raise ValueError(f"{safe!r} is a built-in list; toggle it instead.")
        u = urlparse(url or "")
        if u.scheme not in ("http", "https"):
            raise ValueError("Only http/https URLs are supported.")
        cat = (category or "").strip().lower()
        if not cat:
            raise ValueError("List category is required.")
        fmt_v = ListFormat.parse(fmt).value
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(sort_order), -1) FROM filter_lists").fetchone()
            order = int(row[0]) + 1
            conn.execute(
                """
                INSERT INTO filter_lists(key, name, url, category, format, enabled, sort_order)
                VALUES(?,?,?,?,?,?,?)
                ON CONFLICT(key) DO UPDATE SET url=excluded.url, name=excluded.name,
                    category=excluded.category, format=excluded.format, enabled=excluded.enabled;
                """,
                (safe, name or safe, url, cat, fmt_v, 1 if enabled else 0, order),
            )
            self._bump_version(conn)
        return safe

    def remove_list(self, key: str) -> bool:
        if key in _DEFAULT_LISTS:
            raise ValueError("Built-in lists can be disabled but not removed.")
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM filter_lists WHERE key=?", (key,))
            if cur.rowcount:
                self._bump_version(conn)
            return bool(cur.rowcount)

    def set_enabled(self, enabled_map: Dict[str, bool]) -> None:
        self.init_db()
        with self._connect() as conn:
            rows = [(1 if enabled else 0, key) for key, enabled in (enabled_map or {}).items()]
            if rows:
                conn.executemany("UPDATE filter_lists SET enabled=? WHERE key=?", rows)
            self._bump_version(conn)

    def save_parsed(
        self,
        key: str,
        rules: Sequence[ParsedRule],
        *,
        parse_failures: int = 0,
        nbytes: int = 0,
        fetched_at: Optional[int] = None,
    ) -> None:
        payload = json.dumps([r.to_dict() for r in rules], ensure_ascii=False, separators=(",", ":"))
        ts = int(fetched_at if fetched_at is not None else _now())
        self.init_db()

        def write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO filter_list_rules(key, rules_json) VALUES(?,?) "
                    "ON CONFLICT(key) DO UPDATE SET rules_json=excluded.rules_json",
                    (key, payload),
                )
                conn.execute(
                    """
                    UPDATE filter_lists
                    SET last_success=?, last_attempt=?, last_error='', stale=0, bytes=?, rules=?, parse_failures=?
                    WHERE key=?
                    """,
                    (ts, ts, int(nbytes), len(rules), int(parse_failures), key),
                )

        run_with_db_lock_retry(write)

    def load_rules(self, key: str) -> List[ParsedRule]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT rules_json FROM filter_list_rules WHERE key=?", (key,)).fetchone()
        if not row:
            return []
        out: List[ParsedRule] = []
        try:
            items = json.loads(row[0] or "[]")
        except ValueError:
            log_exception_throttled(
                logger,
                f"filterlist_store.load_rules.{key}",
                key,
                interval_seconds=300.0,
                message="Cached rules for list %s are unreadable; ignoring cache",
            )
            return []
        for d in items:
            try:
                out.append(parsed_rule_from_dict(d))
            except (ValueError, TypeError, AttributeError):
                continue
        return out

    def mark_attempt(self, key: str) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("UPDATE filter_lists SET last_attempt=? WHERE key=?", (_now(), key))

    def mark_stale(self, key: str, error: str) -> None:
        """Record a failed fetch. Cached rules stay in place and keep being served."""
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                "UPDATE filter_lists SET last_error=?, last_attempt=?, stale=1 WHERE key=?",
                ((error or "")[:400], _now(), key),
            )

    def load_filter_lists(self) -> List[FilterList]:
        """All lists (enabled or not) with their cached parsed rules, in priority order."""
        out: List[FilterList] = []
        for st in self.list_statuses():
            out.append(
                FilterList(
                    id=st.key,
                    display_name=st.name,
                    source_uri=st.url,
                    category=st.category,
                    enabled=st.enabled,
                    raw_rule_count=st.rules,
                    last_fetched_at=st.last_success or None,
                    format=ListFormat.parse(st.format),
                    rules=self.load_rules(st.key) if st.enabled else [],
                    parse_failures=st.parse_failures,
                    stale=st.stale,
                    last_error=st.last_error,
                )
            )
        return out

    def should_update(self, status: ListStatus, now_ts: int, force: bool) -> bool:
        if not status.enabled:
            return False
        if force:
            return True
        # Back off after a failed attempt.
        if status.last_attempt > status.last_success and (now_ts - status.last_attempt) < self.retry_interval_seconds:
            return False
        if status.last_success <= 0:
            return True
        return (now_ts - status.last_success) >= int(self.update_interval_seconds)

    def download_text(self, key: str, url: str, timeout_seconds: int = 25) -> Tuple[str, int]:
        """Fetch a list over http(s). Returns (text, bytes); raises FetchFailed."""
        u = urlparse(url or "")
        if u.scheme not in ("http", "https"):
            raise FetchFailed(key, "Only http/https URLs are supported.")

        max_bytes = self.max_download_bytes if self.max_download_bytes > 0 else 64 * 1024 * 1024
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT, "Accept": "text/plain"})
        chunks: List[bytes] = []
        total = 0
        try:
            with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
                cl = resp.headers.get("Content-Length")
                if cl is not None and cl.strip().isdigit() and int(cl) > max_bytes:
                    raise FetchFailed(key, f"Download too large (Content-Length={cl}).")
                charset = resp.headers.get_content_charset() or "utf-8"
                while True:
                    chunk = resp.read(256 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > max_bytes:
                        raise FetchFailed(key, f"Download exceeded limit ({max_bytes} bytes).")
                    chunks.append(chunk)
        except FetchFailed:
            raise
        except (OSError, ValueError) as e:
            logger.warning("Filter list download failed (key=%s): %s", key, e)
            raise FetchFailed(
                key, public_error_message(e, default="Download failed. Check server logs for details.", max_len=300)
            ) from e
        try:
            text = b"".join(chunks).decode(charset, errors="replace")
        except LookupError:
            text = b"".join(chunks).decode("utf-8", errors="replace")
        return text, total

    # -- custom rules -------------------------------------------------------

    def list_custom_rules(self) -> List[CustomRule]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM custom_rules ORDER BY created_at, id").fetchall()
        out: List[CustomRule] = []
        for r in rows:
            types = [t for t in str(r["resource_types"] or "").split(",") if t]
            domains = [d for d in str(r["domains"] or "").split(",") if d]
            out.append(
                CustomRule(
                    id=int(r["id"]),
                    pattern=str(r["pattern"]),
                    type=str(r["type"]),
                    created_at=int(r["created_at"]),
                    resource_types=tuple(types) or None,
                    domains=tuple(domains) or None,
                )
            )
        return out

    def add_custom_rule(
        self,
        pattern: str,
        rule_type: str = "block",
        *,
        resource_types: Optional[Sequence[str]] = None,
        domains: Optional[Sequence[str]] = None,
    ) -> CustomRule:
        now_ms = int(time.time() * 1000)
        rule = CustomRule.from_dict(
            {
                "id": now_ms,
                "pattern": pattern,
                "type": rule_type,
                "created_at": now_ms,
                "resource_types": list(resource_types or []),
                "domains": list(domains or []),
            }
        )
        self.init_db()
        with self._connect() as conn:
            rid = rule.id
            # Timestamp ids; bump until locally unique.
            while conn.execute("SELECT 1 FROM custom_rules WHERE id=?", (rid,)).fetchone():
                rid += 1
            conn.execute(
                "INSERT INTO custom_rules(id, pattern, type, created_at, resource_types, domains) VALUES(?,?,?,?,?,?)",
                (
                    rid,
                    rule.pattern,
                    rule.type,
                    rule.created_at,
                    ",".join(rule.resource_types or ()),
                    ",".join(rule.domains or ()),
                ),
            )
            self._bump_version(conn)
        return CustomRule(
            id=rid,
            pattern=rule.pattern,
            type=rule.type,
            created_at=rule.created_at,
            resource_types=rule.resource_types,
            domains=rule.domains,
        )

    def remove_custom_rule(self, rule_id: int) -> bool:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM custom_rules WHERE id=?", (int(rule_id),))
            if cur.rowcount:
                self._bump_version(conn)
            return bool(cur.rowcount)

    def replace_custom_rules(self, rules: Iterable[CustomRule]) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("DELETE FROM custom_rules")
            for r in rules:
                conn.execute(
                    "INSERT OR REPLACE INTO custom_rules(id, pattern, type, created_at, resource_types, domains) "
                    "VALUES(?,?,?,?,?,?)",
                    (
                        int(r.id),
                        r.pattern,
                        r.type,
                        int(r.created_at),
                        ",".join(r.resource_types or ()),
                        ",".join(r.domains or ()),
                    ),
                )
            self._bump_version(conn)

    # -- whitelist / blacklist ----------------------------------------------

    def list_sites(self, kind: str) -> List[str]:
        if kind not in SITE_KINDS:
            raise ValueError(f"Unknown site list {kind!r}.")
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT domain FROM site_lists WHERE kind=? ORDER BY domain", (kind,)).fetchall()
        return [str(r[0]) for r in rows]

    def set_site(self, kind: str, domain: str, present: bool = True) -> bool:
        if kind not in SITE_KINDS:
            raise ValueError(f"Unknown site list {kind!r}.")
        d = normalize_domain(domain)
        if not looks_like_host(d) or "." not in d:
            raise ValueError(f"Not a valid domain: {domain!r}.")
        self.init_db()
        with self._connect() as conn:
            if present:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO site_lists(kind, domain, added_ts) VALUES(?,?,?)", (kind, d, _now())
                )
            else:
                cur = conn.execute("DELETE FROM site_lists WHERE kind=? AND domain=?", (kind, d))
            if cur.rowcount:
                self._bump_version(conn)
            return bool(cur.rowcount)

    def replace_sites(self, kind: str, domains: Iterable[str]) -> None:
        if kind not in SITE_KINDS:
            raise ValueError(f"Unknown site list {kind!r}.")
        cleaned = []
        for d in domains:
            h = normalize_domain(d)
            if looks_like_host(h) and "." in h and h not in cleaned:
                cleaned.append(h)
        self.init_db()
        with self._connect() as conn:
            conn.execute("DELETE FROM site_lists WHERE kind=?", (kind,))
            conn.executemany(
                "INSERT INTO site_lists(kind, domain, added_ts) VALUES(?,?,?)",
                [(kind, d, _now()) for d in cleaned],
            )
            self._bump_version(conn)

    # -- export / import ----------------------------------------------------

    def export_user_data(self) -> Dict[str, Any]:
        s = self.get_settings()
        return {
            "settings": s,
            "whitelist": self.list_sites("whitelist"),
            "blacklist": self.list_sites("blacklist"),
            "customRules": [r.to_dict() for r in self.list_custom_rules()],
            "lists": {st.key: st.enabled for st in self.list_statuses()},
        }

    def import_user_data(self, data: Dict[str, Any]) -> None:
        """Replace user data from an `export_user_data()` document.

        Everything is validated before the first write.
        """
        if not isinstance(data, dict):
            raise ValueError("Import data must be a JSON object.")
        rules = None
        if "customRules" in data:
            entries = data.get("customRules") or []
            if not isinstance(entries, list) or not all(isinstance(d, dict) for d in entries):
                raise ValueError("customRules must be a list of objects.")
            rules = [CustomRule.from_dict(d) for d in entries]
        settings = data.get("settings")
        if settings is not None and not isinstance(settings, dict):
            raise ValueError("settings must be an object.")
        settings = settings or {}
        enabled = settings.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            raise ValueError("settings.enabled must be true or false.")
        level = settings.get("blocking_level")
        if level is not None and level not in BLOCKING_LEVELS:
            raise ValueError(f"Unknown blocking level: {level!r}.")
        lists = data.get("lists")
        if lists is not None:
            if not isinstance(lists, dict) or not all(isinstance(v, bool) for v in lists.values()):
                raise ValueError("lists must map list keys to true or false.")

        if rules is not None:
            self.replace_custom_rules(rules)
        for kind in SITE_KINDS:
            if kind in data:
                self.replace_sites(kind, data.get(kind) or [])
        if settings:
            self.set_settings(
                enabled=enabled,
                blocking_level=level,
                categories=settings.get("categories"),
            )
        if lists:
            self.set_enabled({str(k): v for k, v in lists.items()})


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except ValueError:
        return int(default)


_store: Optional[FilterListStore] = None


def get_filter_store() -> FilterListStore:
    global _store
    if _store is None:
        _store = FilterListStore(
            db_path=os.environ.get("FILTERFORGE_DB", "/var/lib/filterforge/filterforge.db"),
            update_interval_seconds=_env_int("FILTERFORGE_UPDATE_INTERVAL", 6 * 60 * 60),
            max_download_bytes=_env_int("FILTERFORGE_MAX_DOWNLOAD_BYTES", 64 * 1024 * 1024),
        )
    return _store

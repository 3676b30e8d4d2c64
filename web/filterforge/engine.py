from __future__ import annotations

import dataclasses
import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .backend import InMemoryRuleBackend, RuleBackend
from .compiler import CompileConfig, CompileResult, Diagnostics, compile_rules
from .cosmetics import CosmeticIndex
from .errors import BackendSyncFailed, FetchFailed, public_error_message
from .filterlist_store import FilterListStore, ListStatus, get_filter_store
from .id_ranges import group_ids_by_category
from .logutil import log_exception_throttled, log_warning_throttled
from .rule_parser import parse
from .rule_sync import RuleSynchronizer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    compile: CompileConfig = field(default_factory=CompileConfig)
    batch_size: Optional[int] = None
    fetch_workers: int = 4
    poll_interval_seconds: float = 30.0


def _empty_result() -> CompileResult:
    return CompileResult(rules=[], cosmetics=CosmeticIndex(), scriptlets=[], diagnostics=Diagnostics())


class FilterEngine:
    """Keeps the backend's installed rules in step with the store.

    At most one compilation runs at a time. Triggers that arrive while one is
    running collapse into a single follow-up run, and the in-flight result is
    thrown away instead of being synced.
    """

    def __init__(self, store: FilterListStore, backend: RuleBackend, config: Optional[EngineConfig] = None):
        self.store = store
        self.backend = backend
        self.config = config or EngineConfig()
        self.synchronizer = RuleSynchronizer(backend, batch_size=self.config.batch_size)

        compile_config = self.config.compile
        max_rules = int(getattr(backend, "max_rules", 0) or 0)
        if compile_config.max_total_rules is None and max_rules:
            compile_config = dataclasses.replace(compile_config, max_total_rules=max_rules)
        self.compile_config = compile_config

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        # Held for every write to the backend; the synchronizer is its only writer.
        self._sync_lock = threading.Lock()
        self._running = False
        self._runner: Optional[threading.Thread] = None
        self._pending = False
        self._requested = 0
        self._completed = 0
        self._last_cycle_ok = False
        self._result: Optional[CompileResult] = None
        self._enabled = True
        self._sync_pending = False
        self._last_error = ""
        self._last_compile_ts = 0
        self.compile_runs = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- recompilation -----------------------------------------------------

    def request_recompile(self, reason: str = "", wait: bool = False) -> bool:
        """Ask for a recompile. Returns True if this call started a run.

        With `wait=True` the call returns only once a cycle that started after
        the request has been installed, even when another caller's run was
        already in flight.
        """
        with self._cond:
            self._requested += 1
            ticket = self._requested
            if self._running:
                self._pending = True
                logger.debug("Recompile requested (%s) while one is running; coalesced", reason)
                if wait and self._runner is not threading.current_thread():
                    while self._completed < ticket:
                        self._cond.wait()
                return False
            self._running = True

        logger.debug("Recompile requested (%s)", reason)
        if wait:
            self._run_cycles()
        else:
            t = threading.Thread(target=self._run_cycles, name="filterforge-compile", daemon=True)
            t.start()
        return True

    def recompile_now(self) -> Optional[CompileResult]:
        """Compile and sync before returning. Joins a run that is already in flight."""
        self.request_recompile("recompile now", wait=True)
        with self._lock:
            return self._result if self._last_cycle_ok else None

    def _run_cycles(self) -> None:
        with self._cond:
            self._runner = threading.current_thread()
        try:
            while True:
                with self._cond:
                    self._pending = False
                    started = self._requested
                result = self._compile_once()
                with self._cond:
                    if self._pending:
                        logger.debug("Discarding stale compile result; inputs changed during the run")
                        continue
                if result is not None:
                    self._install(result)
                with self._cond:
                    self._last_cycle_ok = result is not None
                    self._completed = max(self._completed, started)
                    self._cond.notify_all()
                    if self._pending:
                        continue
                    self._running = False
                    self._runner = None
                    return
        except BaseException:
            with self._cond:
                self._running = False
                self._runner = None
                self._completed = self._requested
                self._cond.notify_all()
            raise

    def _compile_once(self) -> Optional[CompileResult]:
        self.compile_runs += 1
        try:
            settings = self.store.get_settings()
            enabled = bool(settings.get("enabled"))
            if not enabled:
                result = _empty_result()
            else:
                result = compile_rules(
                    self.store.load_filter_lists(),
                    self.store.list_custom_rules(),
                    self.store.enabled_categories(),
                    whitelist=self.store.list_sites("whitelist"),
                    blacklist=self.store.list_sites("blacklist"),
                    config=self.compile_config,
                )
        except Exception as e:
            with self._lock:
                self._last_error = public_error_message(e, default="Compilation failed. Check server logs for details.")
            log_exception_throttled(
                logger,
                "engine.compile",
                interval_seconds=60.0,
                message="Rule compilation failed; keeping the previous rule set",
            )
            return None
        with self._lock:
            self._enabled = enabled
        return result

    def _install(self, result: CompileResult) -> bool:
        with self._lock:
            self._result = result
            self._last_compile_ts = int(time.time())
        return self.sync()

    def sync(self) -> bool:
        """Reconcile the backend with the current result. False if it failed."""
        with self._sync_lock:
            return self._sync_current()

    def _sync_current(self) -> bool:
        with self._lock:
            result = self._result
        if result is None:
            return False
        try:
            self.synchronizer.reconcile(result.rules)
        except BackendSyncFailed as e:
            with self._lock:
                self._sync_pending = True
                self._last_error = e.reason
            logger.warning("Backend sync failed (%d changes applied); will retry: %s", e.applied, e.reason)
            return False

        with self._lock:
            self._sync_pending = False
            self._last_error = ""
        ids = group_ids_by_category(result.rule_ids(), self.compile_config.id_space)
        try:
            self.store.set_meta("compiled_rule_ids", json.dumps(ids, sort_keys=True))
        except Exception:
            log_exception_throttled(
                logger,
                "engine.rule_ids_meta",
                interval_seconds=300.0,
                message="Failed to record compiled rule ids",
            )
        return True

    @property
    def sync_pending(self) -> bool:
        with self._lock:
            return self._sync_pending

    @property
    def current(self) -> Optional[CompileResult]:
        with self._lock:
            return self._result

    # -- list updates --------------------------------------------------------

    def _update_one(self, st: ListStatus) -> bool:
        self.store.mark_attempt(st.key)
        try:
            text, nbytes = self.store.download_text(st.key, st.url)
        except FetchFailed as e:
            self.store.mark_stale(st.key, e.reason)
            log_warning_throttled(
                logger,
                f"engine.fetch.{st.key}",
                st.key,
                e.reason,
                interval_seconds=300.0,
                message="Filter list %s not updated; serving cached rules: %s",
            )
            return False
        res = parse(text, st.format)
        self.store.save_parsed(st.key, res.rules, parse_failures=res.failures, nbytes=nbytes)
        logger.info(
            "Updated filter list %s: %d rules, %d skipped lines",
            st.key,
            len(res.rules),
            res.failures,
        )
        return True

    def update_lists(self, force: bool = False, wait: bool = True) -> Dict[str, bool]:
        """Fetch every due list for the enabled categories, then recompile once.

        Returns {list key: updated}. Lists that fail keep their cached rules.
        """
        categories = set(self.store.enabled_categories())
        now_ts = int(time.time())
        due = [
            st
            for st in self.store.list_statuses()
            if st.category in categories and self.store.should_update(st, now_ts, force)
        ]
        if not due:
            return {}

        out: Dict[str, bool] = {}
        workers = max(1, min(int(self.config.fetch_workers), len(due)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="filterforge-fetch") as ex:
            futures = {ex.submit(self._update_one, st): st.key for st in due}
            for fut, key in futures.items():
                try:
                    out[key] = bool(fut.result())
                except Exception:
                    out[key] = False
                    log_exception_throttled(
                        logger,
                        f"engine.update.{key}",
                        interval_seconds=300.0,
                        message="Filter list update crashed",
                    )

        if any(out.values()):
            self.request_recompile("lists updated", wait=wait)
        return out

    # -- consumers -----------------------------------------------------------

    def cosmetics_for(self, domain: str) -> List[str]:
        with self._lock:
            result = self._result
            enabled = self._enabled
        if result is None or not enabled:
            return []
        return result.cosmetics.cosmetics_for(domain)

    def status(self) -> Dict[str, Any]:
        settings = self.store.get_settings()
        with self._lock:
            result = self._result
            out: Dict[str, Any] = {
                "enabled": bool(settings.get("enabled")),
                "blocking_level": settings.get("blocking_level"),
                "categories": self.store.enabled_categories(),
                "rule_count": len(result.rules) if result is not None else 0,
                "max_rules": int(getattr(self.backend, "max_rules", 0) or 0),
                "last_compile_ts": self._last_compile_ts,
                "sync_pending": self._sync_pending,
                "last_error": self._last_error,
                "diagnostics": result.diagnostics.to_dict() if result is not None else None,
            }
        out["available"] = max(0, out["max_rules"] - out["rule_count"])
        out["stale_lists"] = [st.key for st in self.store.list_statuses() if st.stale]
        return out

    # -- background loop -------------------------------------------------------

    def start_background(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="filterforge-updater", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    def poll_once(self, last_refresh_req: int, last_version: int) -> Tuple[int, int]:
        """One background iteration. Returns the updated (refresh, version) marks."""
        refresh_req = self.store.get_refresh_requested()
        force = refresh_req > last_refresh_req
        if force:
            last_refresh_req = refresh_req

        updated = self.update_lists(force=force, wait=True)

        current_version = self.store.get_settings_version()
        if current_version != last_version and not any(updated.values()):
            self.request_recompile("settings changed", wait=True)
        elif self.sync_pending:
            self.sync()
        return last_refresh_req, current_version

    def _loop(self) -> None:
        last_refresh_req = self.store.get_refresh_requested()
        last_version = -1
        while not self._stop.is_set():
            try:
                last_refresh_req, last_version = self.poll_once(last_refresh_req, last_version)
            except Exception:
                log_exception_throttled(
                    logger,
                    "engine.loop",
                    interval_seconds=300.0,
                    message="Filter engine background iteration failed",
                )
            self._stop.wait(self.config.poll_interval_seconds)


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except ValueError:
        return int(default)


_engine: Optional[FilterEngine] = None


def get_filter_engine() -> FilterEngine:
    global _engine
    if _engine is None:
        store = get_filter_store()
        store.init_db()
        backend = InMemoryRuleBackend(
            max_rules=_env_int("FILTERFORGE_BACKEND_MAX_RULES", 30_000),
            max_batch_size=_env_int("FILTERFORGE_BACKEND_BATCH_SIZE", 5_000),
        )
        config = EngineConfig(
            compile=CompileConfig(max_list_rules=_env_int("FILTERFORGE_MAX_LIST_RULES", 30_000)),
            fetch_workers=_env_int("FILTERFORGE_FETCH_WORKERS", 4),
        )
        _engine = FilterEngine(store, backend, config)
    return _engine

import pytest

from filterforge.backend import InMemoryRuleBackend
from filterforge.compiler import compile_rules
from filterforge.errors import BackendSyncFailed, RuleBackendError
from filterforge.models import FilterList
from filterforge.rule_parser import parse
from filterforge.rule_sync import RuleSynchronizer


class FlakyBackend(InMemoryRuleBackend):
    """Fails the Nth update call (1-based) once."""

    def __init__(self, fail_on_call: int = 0, **kw):
        super().__init__(**kw)
        self.fail_on_call = fail_on_call
        self.attempts = 0

    def update_rules(self, add_rules=(), remove_rule_ids=()):
        self.attempts += 1
        if self.attempts == self.fail_on_call:
            raise RuleBackendError("backend is busy")
        return super().update_rules(add_rules=add_rules, remove_rule_ids=remove_rule_ids)


def _rules(n: int, prefix: str = "r"):
    text = "\n".join(f"||{prefix}{i}.test^" for i in range(n))
    fl = FilterList(id="l", display_name="l", source_uri="", category="ads", rules=parse(text).rules)
    return compile_rules([fl], [], {"ads"}).rules


def test_initial_sync_is_chunked_sequentially():
    backend = InMemoryRuleBackend(max_batch_size=4)
    res = RuleSynchronizer(backend).reconcile(_rules(10))
    assert res.added == 10
    assert res.removed == 0
    assert res.batches == 3
    assert backend.calls == 3
    assert len(backend) == 10


def test_explicit_batch_size_is_capped_by_backend_limit():
    backend = InMemoryRuleBackend(max_batch_size=3)
    res = RuleSynchronizer(backend, batch_size=100).reconcile(_rules(7))
    assert res.batches == 3


def test_reconcile_is_idempotent():
    backend = InMemoryRuleBackend()
    sync = RuleSynchronizer(backend)
    target = _rules(5)
    sync.reconcile(target)
    calls = backend.calls
    res = sync.reconcile(target)
    assert (res.added, res.removed, res.unchanged, res.batches) == (0, 0, 5, 0)
    assert backend.calls == calls


def test_diff_removes_stale_and_replaces_changed_ids():
    backend = InMemoryRuleBackend()
    sync = RuleSynchronizer(backend)
    sync.reconcile(_rules(5, "old"))

    res = sync.reconcile(_rules(3, "new"))
    # Same ids 1..3 now carry different patterns; 4 and 5 disappear.
    assert res.removed == 5
    assert res.added == 3
    assert sorted(backend.installed_ids()) == [1, 2, 3]
    assert backend.decide("https://new0.test/") is not None
    assert backend.decide("https://old4.test/") is None


def test_partial_failure_then_retry_converges():
    backend = FlakyBackend(fail_on_call=2, max_batch_size=2)
    sync = RuleSynchronizer(backend)
    target = _rules(6)

    with pytest.raises(BackendSyncFailed) as ei:
        sync.reconcile(target)
    assert ei.value.applied == 2
    assert isinstance(ei.value.cause, RuleBackendError)
    assert len(backend) == 2

    res = sync.reconcile(target)
    assert res.added == 4
    assert res.unchanged == 2
    assert [r["id"] for r in backend.get_rules()] == [r.id for r in target]


def test_stale_rules_from_an_interrupted_run_are_removed():
    backend = InMemoryRuleBackend()
    # Leftover from a crash between diff and removal.
    backend.update_rules(add_rules=[{"id": 9_999, "priority": 1, "action": {"type": "block"}, "condition": {"regexFilter": "x"}}])
    RuleSynchronizer(backend).reconcile(_rules(2))
    assert 9_999 not in backend.installed_ids()
    assert len(backend) == 2


def test_target_over_backend_limit_is_refused_without_writes():
    backend = InMemoryRuleBackend(max_rules=3)
    with pytest.raises(BackendSyncFailed):
        RuleSynchronizer(backend).reconcile(_rules(4))
    assert backend.calls == 0


def test_duplicate_target_ids_are_rejected():
    rules = _rules(1)
    with pytest.raises(ValueError):
        RuleSynchronizer.plan(rules + rules, [])


def test_backend_enforces_batch_and_id_limits():
    backend = InMemoryRuleBackend(max_rules=2, max_batch_size=2)
    recs = [r.to_backend() for r in _rules(3)]
    with pytest.raises(RuleBackendError):
        backend.update_rules(add_rules=recs)
    backend.update_rules(add_rules=recs[:1])
    with pytest.raises(RuleBackendError):
        backend.update_rules(add_rules=recs[:1])
    # Remove-then-add in one call may reuse the id.
    backend.update_rules(add_rules=recs[:1], remove_rule_ids=[recs[0]["id"]])
    assert len(backend) == 1

"""
Tests for post-commit side effects.
"""
import logging

from cargo_subscriptions.features.audit.service import list_audit_entries
from cargo_subscriptions.features.subscriptions.effects import PostCommitEffects


def test_effects_run_in_queue_order():
    calls = []
    effects = PostCommitEffects("approve")
    effects.add("first", lambda **kw: calls.append(("first", kw)), n=1)
    effects.add("second", lambda **kw: calls.append(("second", kw)), n=2)

    assert len(effects) == 2
    assert effects.run() == []
    assert calls == [("first", {"n": 1}), ("second", {"n": 2})]


def test_failed_effect_does_not_stop_the_rest(caplog):
    calls = []

    def broken(**kwargs):
        raise RuntimeError("notification service down")

    effects = PostCommitEffects("reject")
    effects.add("notify:subscription_rejected", broken)
    effects.add("audit:subscription_rejected", lambda **kw: calls.append("audit"))

    with caplog.at_level(logging.WARNING):
        failed = effects.run()

    assert failed == ["notify:subscription_rejected"]
    assert calls == ["audit"]
    record = next(r for r in caplog.records if "post-commit effect failed" in r.getMessage())
    assert record.operation == "reject"
    assert record.effect == "notify:subscription_rejected"


def test_effects_execute_once():
    calls = []
    effects = PostCommitEffects("cancel")
    effects.add("only", lambda: calls.append(1))
    effects.run()
    effects.run()
    assert calls == [1]
    assert len(effects) == 0


def test_audit_effect_writes_entry(now):
    effects = PostCommitEffects("extend")
    effects.audit(
        action="subscription_extended",
        actor_id="admin-1",
        target_id="sub-1",
        user_id="user-1",
        details={"days": 10},
        now=now,
    )
    assert effects.run() == []

    entries = list_audit_entries(target_id="sub-1")
    assert len(entries) == 1
    assert entries[0].action == "subscription_extended"
    assert entries[0].actor_id == "admin-1"

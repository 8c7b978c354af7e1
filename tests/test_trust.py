import json

from ctxvault.policy.trust import TrustTokenStore


def test_grant_then_expire(trust, clock):
    trust.grant("import-context", 1)
    assert trust.is_trusted("import-context")
    clock.advance(seconds=59)
    assert trust.is_trusted("import-context")
    clock.advance(seconds=2)
    assert not trust.is_trusted("import-context")


def test_minimum_lifetime_is_one_minute(trust, clock):
    expiry = trust.grant("status", 0)
    assert (expiry - clock.now).total_seconds() == 60


def test_grant_overwrites_existing_token(trust, clock):
    trust.grant("status", 30)
    expiry = trust.grant("status", 5)
    assert trust.expiry("status") == expiry


def test_trust_file_stores_epoch_millis(trust, paths, clock):
    trust.grant("import-context", 15)
    doc = json.loads(paths.trust.read_text())
    expected = int(clock.now.timestamp() * 1000) + 15 * 60 * 1000
    assert doc == {"import-context": expected}


def test_list_only_live_tokens_soonest_first(trust, clock):
    trust.grant("a", 30)
    trust.grant("b", 5)
    trust.grant("c", 1)
    clock.advance(minutes=2)
    assert [cmd for cmd, _ in trust.list()] == ["b", "a"]


def test_unknown_command_is_untrusted(trust):
    assert not trust.is_trusted("import-context")
    assert trust.expiry("import-context") is None


def test_malformed_trust_file_is_ignored(paths, clock):
    paths.trust.parent.mkdir(parents=True, exist_ok=True)
    paths.trust.write_text("[broken")
    store = TrustTokenStore(paths.trust, clock=clock)
    assert store.list() == []
    store.grant("status", 5)
    assert store.is_trusted("status")


def test_non_numeric_entries_are_skipped(paths, clock):
    paths.trust.parent.mkdir(parents=True, exist_ok=True)
    future = int(clock.now.timestamp() * 1000) + 60_000
    paths.trust.write_text(json.dumps({"ok": future, "bad": "soon", "flag": True}))
    store = TrustTokenStore(paths.trust, clock=clock)
    assert [cmd for cmd, _ in store.list()] == ["ok"]

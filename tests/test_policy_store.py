import json

from ctxvault.policy.models import DEFAULT_ALLOWED_COMMANDS, Policy, repair_policy
from ctxvault.policy.store import PolicyStore


def _write(path, doc):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc))


def test_missing_file_is_created_with_defaults(paths):
    store = PolicyStore(paths.policy)
    policy = store.load()
    assert paths.policy.exists()
    assert policy.allowed_commands == DEFAULT_ALLOWED_COMMANDS
    on_disk = json.loads(paths.policy.read_text())
    assert on_disk["requireSignedContext"] is False
    assert on_disk["auditTrail"] is True


def test_missing_field_is_repaired_and_rewritten(paths):
    _write(paths.policy, {
        "allowedCommands": ["status"],
        "allowedGlobs": ["src/**"],
        "envPassthrough": ["PATH"],
        "networkEgress": False,
        "auditTrail": True,
        "signExports": False,
    })
    policy = PolicyStore(paths.policy).load()
    assert policy.require_signed_context is False
    on_disk = json.loads(paths.policy.read_text())
    assert on_disk["requireSignedContext"] is False
    assert on_disk["allowedCommands"] == ["status"]


def test_malformed_values_fall_back_to_defaults(paths):
    _write(paths.policy, {
        "allowedCommands": "status",
        "allowedGlobs": ["src/**", "src/**", 7],
        "networkEgress": "yes",
    })
    policy = PolicyStore(paths.policy).load()
    assert policy.allowed_commands == DEFAULT_ALLOWED_COMMANDS
    assert policy.allowed_globs == ["src/**"]
    assert policy.network_egress is False


def test_unknown_keys_are_preserved(paths):
    _write(paths.policy, {"customSetting": {"x": 1}})
    PolicyStore(paths.policy).load()
    assert json.loads(paths.policy.read_text())["customSetting"] == {"x": 1}


def test_well_formed_file_is_not_rewritten(paths):
    store = PolicyStore(paths.policy)
    store.save(Policy(allowed_commands=["status"]))
    before = paths.policy.stat().st_mtime_ns
    store.load()
    assert paths.policy.stat().st_mtime_ns == before


def test_unparseable_file_is_set_aside(paths):
    paths.policy.parent.mkdir(parents=True, exist_ok=True)
    paths.policy.write_text("{not json")
    policy = PolicyStore(paths.policy).load()
    assert policy == Policy()
    backups = list(paths.policy.parent.glob("policy.json.corrupt-*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"


def test_repair_empty_allowlist_is_kept():
    policy, changed = repair_policy({"allowedCommands": [], "allowedGlobs": []})
    assert policy.allowed_commands == []
    assert policy.allowed_globs == []
    assert changed is True  # other fields were missing


def test_repair_non_object_document():
    policy, changed = repair_policy(["not", "a", "policy"])
    assert changed is True
    assert policy == Policy()

"""Tests for the Admission Gate."""

import json
import threading
from datetime import timedelta

import pytest

from keygate.admin import AdminService
from keygate.credentials import ADMIN_ROLE, Credential, CredentialStatus, utcnow
from keygate.errors import (
    AccessDeniedError,
    AdminKeyRequiredError,
    InvalidKeyError,
    MissingKeyError,
    QuotaExceededError,
)
from keygate.gate import AdmissionContext, AdmissionGate, find_credential, key_prefix
from keygate.storage import JsonFileCredentialStore


def seed(store, *credentials):
    store.save(list(credentials))


def stored(store, key):
    return find_credential(store.load(), key)


class TestAdmit:
    """Admission decisions."""

    def test_missing_key(self, gate, store):
        with pytest.raises(MissingKeyError):
            gate.admit(None)
        with pytest.raises(MissingKeyError):
            gate.admit("")

    def test_unknown_key(self, gate, store):
        seed(store, Credential(key="sk_known", limit=5))
        with pytest.raises(InvalidKeyError):
            gate.admit("sk_unknown")

    def test_inactive_key(self, gate, store):
        seed(store, Credential(key="sk_off", limit=5, status=CredentialStatus.INACTIVE))
        with pytest.raises(InvalidKeyError):
            gate.admit("sk_off")
        assert stored(store, "sk_off").used == 0

    def test_expired_key_refused_and_pruned(self, gate, store):
        seed(store, Credential(key="sk_old", limit=5, expires_at=utcnow() - timedelta(minutes=1)))
        with pytest.raises(InvalidKeyError):
            gate.admit("sk_old")
        assert store.load() == []

    def test_admit_increments_and_stamps(self, gate, store):
        seed(store, Credential(key="sk_a", limit=5, owner="acme"))
        before = utcnow()

        context = gate.admit("sk_a")

        assert context == AdmissionContext(key="sk_a", owner="acme", used=1, limit=5, remaining=4)
        credential = stored(store, "sk_a")
        assert credential.used == 1
        assert credential.last_used >= before.replace(microsecond=(before.microsecond // 1000) * 1000)

    def test_quota_sequence(self, gate, store):
        seed(store, Credential(key="sk_a", limit=3))

        remaining = [gate.admit("sk_a").remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(QuotaExceededError) as exc_info:
            gate.admit("sk_a")
        assert exc_info.value.limit == 3
        assert exc_info.value.used == 3
        assert exc_info.value.details["reset"] == "Contate o administrador para reset"
        assert stored(store, "sk_a").used == 3

    def test_refusal_leaves_last_used_alone(self, gate, store):
        seed(store, Credential(key="sk_a", limit=1, used=1))
        with pytest.raises(QuotaExceededError):
            gate.admit("sk_a")
        assert stored(store, "sk_a").last_used is None

    def test_lowered_limit_refuses(self, gate, store):
        seed(store, Credential(key="sk_a", limit=2, used=5))
        with pytest.raises(QuotaExceededError):
            gate.admit("sk_a")
        assert stored(store, "sk_a").used == 5

    def test_other_credentials_untouched(self, gate, store):
        seed(store, Credential(key="sk_a", limit=5), Credential(key="sk_b", limit=5, used=2))
        gate.admit("sk_a")
        assert stored(store, "sk_b").used == 2

    def test_outcomes_recorded(self, gate, store, metrics):
        seed(store, Credential(key="sk_a", limit=1))
        gate.admit("sk_a")
        with pytest.raises(QuotaExceededError):
            gate.admit("sk_a")
        with pytest.raises(MissingKeyError):
            gate.admit(None)

        assert metrics.get_sample("admission_total", {"outcome": "granted"}) == 1.0
        assert metrics.get_sample("admission_total", {"outcome": "quota_exceeded"}) == 1.0
        assert metrics.get_sample("admission_total", {"outcome": "missing_key"}) == 1.0


class TestConcurrency:
    """Concurrent admissions against one credential."""

    @pytest.mark.parametrize("limit,callers", [(1, 2), (5, 20)])
    def test_never_over_admits(self, json_path, limit, callers):
        store = JsonFileCredentialStore(str(json_path))
        store.save([Credential(key="sk_shared", limit=limit)])
        gate = AdmissionGate(store)

        barrier = threading.Barrier(callers)
        granted = []
        refused = []

        def call():
            barrier.wait()
            try:
                gate.admit("sk_shared")
                granted.append(1)
            except QuotaExceededError:
                refused.append(1)

        threads = [threading.Thread(target=call) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == limit
        assert len(refused) == callers - limit
        assert find_credential(store.load(), "sk_shared").used == limit


class TestAuthorizeAdmin:
    """Admin gate."""

    def test_no_key(self, gate):
        with pytest.raises(AdminKeyRequiredError):
            gate.authorize_admin(None)

    def test_unknown_key(self, gate):
        with pytest.raises(AccessDeniedError):
            gate.authorize_admin("sk_nobody")

    def test_non_admin_key(self, gate, store):
        seed(store, Credential(key="sk_user", limit=5))
        with pytest.raises(AccessDeniedError):
            gate.authorize_admin("sk_user")

    def test_inactive_admin_key(self, gate, store):
        seed(store, Credential(key="sk_root", limit=5, role=ADMIN_ROLE, status=CredentialStatus.INACTIVE))
        with pytest.raises(AccessDeniedError):
            gate.authorize_admin("sk_root")

    def test_admin_key_not_metered(self, gate, store):
        seed(store, Credential(key="sk_root", limit=1, used=1, role=ADMIN_ROLE))
        credential = gate.authorize_admin("sk_root")
        assert credential.key == "sk_root"
        assert stored(store, "sk_root").used == 1


class TestHelpers:
    def test_key_prefix(self):
        assert key_prefix("sk_abcdefghijkl") == "sk_abcde..."
        assert key_prefix(None) == "-"



class TestProperties:
    """End-to-end admission properties over a JSON file store."""

    @pytest.fixture
    def file_gate(self, json_store):
        return AdmissionGate(json_store)

    @pytest.fixture
    def file_admin(self, json_store):
        return AdminService(json_store)

    def test_inactive_indistinguishable_from_unknown(self, file_gate, json_store):
        seed(json_store, Credential(key="sk_off", limit=5, status=CredentialStatus.INACTIVE))
        with pytest.raises(InvalidKeyError) as inactive:
            file_gate.admit("sk_off")
        with pytest.raises(InvalidKeyError) as unknown:
            file_gate.admit("sk_nobody")
        assert inactive.value.to_dict() == unknown.value.to_dict()
        assert inactive.value.status_code == unknown.value.status_code

    def test_pruning_is_idempotent(self, json_store, caplog):
        seed(json_store, Credential(key="sk_old_key", limit=1, expires_at=utcnow() - timedelta(days=1)))
        with caplog.at_level("INFO", logger="keygate.storage"):
            assert json_store.load() == []
            assert json_store.load() == []
        assert sum("Pruned expired credential" in r.getMessage() for r in caplog.records) == 1

    def test_save_load_round_trip_is_noop(self, json_store, json_path):
        seed(
            json_store,
            Credential(key="sk_a", limit=5, owner="acme", used=2, last_used=utcnow()),
            Credential(key="sk_b", limit=9, role=ADMIN_ROLE, expires_at=utcnow() + timedelta(days=3)),
        )
        before = json_path.read_bytes()
        json_store.save(json_store.load())
        assert json_path.read_bytes() == before

    def test_save_load_round_trip_keeps_legacy_layout(self, json_store, json_path):
        records = [
            {"key": "k1", "limit": 5, "used": 0},
            {
                "key": "k2",
                "limit": 3,
                "used": None,
                "owner": "bob",
                "role": None,
                "createdAt": "2024-01-01T00:00:00Z",
                "expiresAt": None,
                "expiresInDays": None,
            },
        ]
        json_path.parent.mkdir(parents=True)
        json_path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        before = json_path.read_bytes()

        json_store.save(json_store.load())
        assert json_path.read_bytes() == before

    def test_admission_on_legacy_record_only_touches_usage(self, file_gate, json_store, json_path):
        json_path.parent.mkdir(parents=True)
        json_path.write_text(json.dumps([{"key": "k1", "limit": 5, "used": 0, "plan": "gold"}]))

        file_gate.admit("k1")

        [record] = json.loads(json_path.read_text())
        assert list(record) == ["key", "limit", "used", "plan", "lastUsed"]
        assert record["used"] == 1
        assert record["plan"] == "gold"
        assert record["lastUsed"].endswith("Z")

    def test_quota_and_reset_scenario(self, file_gate, file_admin, json_store):
        file_admin.create_raw("k1", 2, owner="alice")

        file_gate.admit("k1")
        file_gate.admit("k1")
        assert stored(json_store, "k1").used == 2

        with pytest.raises(QuotaExceededError):
            file_gate.admit("k1")
        assert stored(json_store, "k1").used == 2

        file_admin.reset_usage("k1")
        assert stored(json_store, "k1").used == 0
        assert file_gate.admit("k1").used == 1

    def test_zero_day_expiry_scenario(self, file_gate, file_admin, json_store):
        key = file_admin.create("alice", 5, expires_in_days=0).key
        assert stored(json_store, key) is None
        with pytest.raises(InvalidKeyError):
            file_gate.admit(key)

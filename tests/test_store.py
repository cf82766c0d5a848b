"""
tests/test_store.py — Tests for the table store back-ends and CareRepository.

The Supabase client is exercised against a mocked requests session; the
in-memory store is used directly.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from carecompanion.core.config import DataStoreConfig
from carecompanion.store.client import (
    DataStoreError,
    InMemoryTableStore,
    SupabaseClient,
    create_store,
)
from carecompanion.store.records import (
    CareRepository,
    FamilyNotification,
    IssueReport,
    IssueType,
    NotificationType,
)


# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────

def _response(status: int = 200, body: object = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.content = b"" if body is None else b"x"
    resp.text = "" if body is None else str(body)
    resp.json.return_value = body
    return resp


@pytest.fixture()
def store() -> InMemoryTableStore:
    return InMemoryTableStore(seed={
        "medications": [
            {"id": "m2", "senior_id": "s1", "name": "Metformin", "time": "20:00"},
            {"id": "m1", "senior_id": "s1", "name": "Amlodipine", "dosage": "5 mg"},
            {"id": "m3", "senior_id": "other", "name": "Aspirin"},
        ],
        "emergency_contacts": [
            {"id": "c1", "senior_id": "s1", "name": "Anna", "is_primary": True},
            {"id": "c2", "senior_id": "s1", "name": "Ben", "is_primary": False},
        ],
        "senior_profiles": [
            {"id": "s1", "full_name": "Mary Thomas", "age": 78,
             "health_conditions": ["hypertension"]},
        ],
    })


@pytest.fixture()
def repo(store: InMemoryTableStore) -> CareRepository:
    return CareRepository(store, "s1")


# ──────────────────────────────────────────────────────────────
# InMemoryTableStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryTableStore:

    def test_insert_assigns_id_and_created_at(self) -> None:
        s = InMemoryTableStore()
        row = s.insert("t", [{"a": 1}])[0]
        assert row["id"]
        assert row["created_at"]

    def test_select_filters_and_orders(self, store: InMemoryTableStore) -> None:
        rows = store.select("medications", {"senior_id": "s1"}, order="name")
        assert [r["name"] for r in rows] == ["Amlodipine", "Metformin"]

    def test_select_unknown_table_is_empty(self, store: InMemoryTableStore) -> None:
        assert store.select("nope") == []

    def test_returned_rows_are_copies(self, store: InMemoryTableStore) -> None:
        store.select("medications", {"id": "m1"})[0]["name"] = "changed"
        assert store.select("medications", {"id": "m1"})[0]["name"] == "Amlodipine"

    def test_update_matching_rows(self, store: InMemoryTableStore) -> None:
        changed = store.update("emergency_contacts", {"phone": "555"}, {"senior_id": "s1"})
        assert len(changed) == 2
        assert all(r["phone"] == "555" for r in store.select("emergency_contacts"))

    def test_update_without_filters_refused(self, store: InMemoryTableStore) -> None:
        with pytest.raises(DataStoreError):
            store.update("medications", {"name": "x"}, {})


# ──────────────────────────────────────────────────────────────
# SupabaseClient
# ──────────────────────────────────────────────────────────────

class TestSupabaseClient:

    @pytest.fixture()
    def session(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture()
    def client(self, session: MagicMock) -> SupabaseClient:
        return SupabaseClient("https://abc.supabase.co/", "anon-key", session=session)

    def test_select_builds_postgrest_query(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.return_value = _response(body=[{"id": "m1"}])
        rows = client.select("medications", {"senior_id": "s1", "is_primary": True}, order="name")
        assert rows == [{"id": "m1"}]
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "GET"
        assert url == "https://abc.supabase.co/rest/v1/medications"
        assert kwargs["params"] == {
            "select": "*",
            "senior_id": "eq.s1",
            "is_primary": "eq.true",
            "order": "name.asc",
        }
        assert kwargs["headers"]["apikey"] == "anon-key"
        assert kwargs["headers"]["Authorization"] == "Bearer anon-key"

    def test_insert_posts_rows(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.return_value = _response(status=201, body=[{"id": "n1"}])
        assert client.insert("family_notifications", [{"message": "hi"}]) == [{"id": "n1"}]
        assert session.request.call_args[0][0] == "POST"
        assert session.request.call_args[1]["json"] == [{"message": "hi"}]

    def test_insert_nothing_skips_request(self, client: SupabaseClient, session: MagicMock) -> None:
        assert client.insert("t", []) == []
        session.request.assert_not_called()

    def test_update_patches_with_filters(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.return_value = _response(body={"id": "m1"})
        assert client.update("medications", {"name": "x"}, {"id": "m1"}) == [{"id": "m1"}]
        assert session.request.call_args[0][0] == "PATCH"
        assert session.request.call_args[1]["params"] == {"id": "eq.m1"}

    def test_http_error_raises(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.return_value = _response(status=401, body={"message": "bad key"})
        with pytest.raises(DataStoreError, match="401"):
            client.select("medications")

    def test_transport_error_raises(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.side_effect = requests.Timeout("slow")
        with pytest.raises(DataStoreError):
            client.select("medications")

    def test_empty_body_is_empty_list(self, client: SupabaseClient, session: MagicMock) -> None:
        session.request.return_value = _response(status=204)
        assert client.update("medications", {"name": "x"}, {"id": "m1"}) == []

    def test_missing_credentials(self) -> None:
        with pytest.raises(DataStoreError):
            SupabaseClient("", "key")

    def test_from_config_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_SB_URL", "https://xyz.supabase.co")
        monkeypatch.setenv("TEST_SB_KEY", "k")
        cfg = DataStoreConfig(backend="supabase", url_env="TEST_SB_URL", key_env="TEST_SB_KEY")
        assert isinstance(create_store(cfg), SupabaseClient)

    def test_from_config_unset_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_SB_URL", raising=False)
        cfg = DataStoreConfig(backend="supabase", url_env="TEST_SB_URL", key_env="TEST_SB_KEY")
        with pytest.raises(DataStoreError):
            create_store(cfg)

    def test_memory_backend(self) -> None:
        assert isinstance(create_store(DataStoreConfig()), InMemoryTableStore)


# ──────────────────────────────────────────────────────────────
# CareRepository
# ──────────────────────────────────────────────────────────────

class TestCareRepository:

    def test_list_medications_for_senior(self, repo: CareRepository) -> None:
        meds = repo.list_medications()
        assert [m.name for m in meds] == ["Amlodipine", "Metformin"]
        assert meds[0].time == "08:00"
        assert meds[1].time == "20:00"
        assert not any(m.taken for m in meds)

    def test_mark_taken_and_reset(self, repo: CareRepository) -> None:
        repo.mark_taken("m1")
        assert repo.get_medication("m1").taken is True
        repo.mark_taken("m1", False)
        assert repo.get_medication("m1").taken is False
        repo.mark_taken("m1")
        repo.reset_daily()
        assert repo.get_medication("m1").taken is False

    def test_record_reminder_counts(self, repo: CareRepository) -> None:
        assert repo.record_reminder("m1") == 1
        assert repo.record_reminder("m1") == 2
        assert repo.get_medication("m1").reminder_count == 2

    def test_add_medication(self, repo: CareRepository) -> None:
        med = repo.add_medication(" Vitamin D ", dosage="1000 IU", time="09:30")
        assert med.name == "Vitamin D"
        assert med.senior_id == "s1"
        assert repo.get_medication(med.id) is not None

    @pytest.mark.parametrize("name, time", [("", "08:00"), ("   ", "08:00"), ("Pill", "8am"), ("Pill", "25:00")])
    def test_add_medication_rejects_bad_input(self, repo: CareRepository, name: str, time: str) -> None:
        with pytest.raises(ValueError):
            repo.add_medication(name, time=time)

    def test_get_unknown_medication(self, repo: CareRepository) -> None:
        assert repo.get_medication("missing") is None

    def test_contacts(self, repo: CareRepository) -> None:
        assert [c.name for c in repo.list_contacts()] == ["Anna", "Ben"]
        assert [c.name for c in repo.list_contacts(primary_only=True)] == ["Anna"]

    def test_profile(self, repo: CareRepository) -> None:
        profile = repo.get_profile()
        assert profile is not None
        assert profile.full_name == "Mary Thomas"
        assert profile.health_conditions == ("hypertension",)

    def test_missing_profile(self, store: InMemoryTableStore) -> None:
        assert CareRepository(store, "nobody").get_profile() is None

    def test_issue_report_row(self, repo: CareRepository, store: InMemoryTableStore) -> None:
        repo.save_issue_report(IssueReport(
            senior_id="s1",
            issue_type=IssueType.HEALTH_CONCERN,
            description="Health concern: dizzy",
            voice_transcript="dizzy",
            ai_response="Please sit down.",
            confidence_level=0.8,
            language="en",
        ))
        row = store.select("issue_reports")[0]
        assert row["issue_type"] == "health_concern"
        assert row["confidence_level"] == 0.8

    def test_insert_notifications(self, repo: CareRepository, store: InMemoryTableStore) -> None:
        written = repo.insert_notifications([
            FamilyNotification("c1", "s1", NotificationType.EMERGENCY, "help", is_emergency=True),
            FamilyNotification("c2", "s1", NotificationType.EMERGENCY, "help", is_emergency=True),
        ])
        assert written == 2
        rows = store.select("family_notifications")
        assert {r["notification_type"] for r in rows} == {"emergency"}
        assert all(r["is_read"] is False and r["sent_at"] for r in rows)

    def test_insert_no_notifications(self, repo: CareRepository) -> None:
        assert repo.insert_notifications([]) == 0

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import count_rows, make_workbook, seed_assignment, seed_ship_type, seed_user, seed_vessel
from trb_import.assignments import ASSIGNMENTS, COMMIT_OVERLAP_MESSAGE
from trb_import.cadets import CADETS
from trb_import.commit import commit_import
from trb_import.domain import GatePolicy
from trb_import.errors import CommitAbortedError, CommitTimeoutError, PersistenceError
from trb_import.report import CommitOutcome, RowStatus
from trb_import.vessels import VESSELS

CADET_HEADERS = ["full_name", "email", "trainee_type", "rank_label"]
VESSEL_HEADERS = ["imo_number", "vessel_name", "vessel_type", "class_society"]


def outcomes(result):
    return [r.commit_outcome for r in result.results]


def test_strict_commit_blocked_then_resubmitted(db, engine):
    broken = make_workbook(
        CADET_HEADERS,
        [
            ["Asha Rao", "asha@example.com", "DECK_CADET", None],
            ["Ravi Kumar", "ravi@example", "ENGINE_CADET", None],
        ],
    )

    with pytest.raises(CommitAbortedError) as excinfo:
        commit_import(db, "cadets", broken)

    assert excinfo.value.preview.summary["fail"] == 1
    assert excinfo.value.batch_id
    assert count_rows(engine, "users") == 0

    fixed = make_workbook(
        CADET_HEADERS,
        [
            ["Asha Rao", "asha@example.com", "DECK_CADET", None],
            ["Ravi Kumar", "ravi@example.com", "ENGINE_CADET", None],
        ],
    )
    result = commit_import(db, "cadets", fixed)

    assert result.summary["created"] == 2
    assert outcomes(result) == [CommitOutcome.CREATED, CommitOutcome.CREATED]
    assert count_rows(engine, "users") == 2


def test_second_commit_of_same_file_creates_nothing(db, engine):
    content = make_workbook(
        CADET_HEADERS,
        [
            ["Asha Rao", "asha@example.com", "DECK_CADET", None],
            ["Ravi Kumar", "ravi@example.com", "ENGINE_CADET", None],
        ],
    )

    first = commit_import(db, "cadets", content)
    second = commit_import(db, "cadets", content)

    assert first.summary["created"] == 2
    assert second.summary == {
        "total": 2,
        "created": 0,
        "skipped": 2,
        "fail": 0,
        "ready": 0,
        "ready_with_warnings": 0,
    }
    assert all(r.preview_status is RowStatus.SKIP for r in second.results)
    assert second.results[0].issues == ("email already exists (row will be skipped)",)
    assert "No new cadet records created (all rows already exist or were skipped)." in second.notes
    assert first.batch_id != second.batch_id
    assert count_rows(engine, "users") == 2


def test_cadet_insert_stores_override_or_derived_values(db, engine):
    content = make_workbook(
        CADET_HEADERS + ["trb_applicable", "nationality"],
        [
            ["Asha Rao", "Asha@Example.com", "DECK_CADET", None, None, "indian"],
            ["Ravi Kumar", "ravi@example.com", "DECK_CADET", "Third Officer", "no", None],
        ],
    )

    result = commit_import(db, "cadets", content)

    assert result.summary["ready"] == 1
    assert result.summary["ready_with_warnings"] == 1
    with engine.begin() as conn:
        rows = conn.execute(
            text(
                """
                SELECT email, password_hash, role_id, rank_label, category, trb_applicable, nationality
                FROM users ORDER BY id
                """
            )
        ).mappings().all()

    assert rows[0]["email"] == "asha@example.com"
    assert rows[0]["password_hash"] == "TEMP"
    assert rows[0]["role_id"] == 1
    assert rows[0]["rank_label"] == "Deck Cadet"
    assert rows[0]["nationality"] == "Indian"
    assert bool(rows[0]["trb_applicable"]) is True
    assert rows[1]["rank_label"] == "Third Officer"
    assert rows[1]["category"] == "Cadet"
    assert bool(rows[1]["trb_applicable"]) is False


def test_lenient_commit_shares_one_new_ship_type(db, engine):
    content = make_workbook(
        VESSEL_HEADERS,
        [
            ["9876543", "MV Pioneer", "Ro-Ro Ferry", "DNV (Det Norske Veritas)"],
            ["9123456", "MV Explorer", "ro-ro ferry", None],
            ["123", "MV Broken", "Ro-Ro Ferry", None],
        ],
    )

    result = commit_import(db, "vessels", content)

    assert outcomes(result) == [CommitOutcome.CREATED, CommitOutcome.CREATED, CommitOutcome.SKIPPED]
    assert result.summary["fail"] == 1
    assert result.results[2].issues == ('IMO Number "123" must be 7 digits',)
    assert "1 rows skipped due to validation errors." in result.notes
    assert count_rows(engine, "ship_types") == 1
    with engine.begin() as conn:
        ship_type = conn.execute(
            text("SELECT id, type_code, description FROM ship_types")
        ).mappings().one()
        ship_type_ids = conn.execute(text("SELECT DISTINCT ship_type_id FROM vessels")).scalars().all()

    assert ship_type["type_code"] == "RO_RO_FERRY"
    assert ship_type["description"] == "Auto-created via Excel Import"
    assert ship_type_ids == [ship_type["id"]]


def test_policy_override_makes_vessels_strict(db, engine):
    content = make_workbook(
        VESSEL_HEADERS,
        [
            ["9876543", "MV Pioneer", "Bulk Carrier", None],
            [None, "MV Nameless", "Bulk Carrier", None],
        ],
    )

    with pytest.raises(CommitAbortedError):
        commit_import(db, "vessels", content, policy=GatePolicy.STRICT)

    assert count_rows(engine, "vessels") == 0
    assert count_rows(engine, "ship_types") == 0


def test_policy_override_makes_cadets_lenient(db, engine):
    content = make_workbook(
        CADET_HEADERS,
        [
            ["Asha Rao", "asha@example.com", "DECK_CADET", None],
            [None, "ravi@example.com", "ENGINE_CADET", None],
        ],
    )

    result = commit_import(db, "cadets", content, policy="lenient")

    assert outcomes(result) == [CommitOutcome.CREATED, CommitOutcome.SKIPPED]
    assert count_rows(engine, "users") == 1


def test_row_created_by_another_writer_is_skipped(db, engine, monkeypatch):
    seed_user(engine, "asha@example.com")
    monkeypatch.setattr(CADETS, "existing_keys", lambda db, rows: set())
    content = make_workbook(
        CADET_HEADERS,
        [
            ["Asha Rao", "asha@example.com", "DECK_CADET", None],
            ["Ravi Kumar", "ravi@example.com", "ENGINE_CADET", None],
        ],
    )

    result = commit_import(db, "cadets", content)

    assert outcomes(result) == [CommitOutcome.SKIPPED, CommitOutcome.CREATED]
    assert result.results[0].issues == (
        "cadet already exists (created by a concurrent import; skipped)",
    )
    assert count_rows(engine, "users") == 2


def test_database_failure_rolls_back_everything(db, engine, monkeypatch):
    def failing_insert(db, row, batch):
        raise OperationalError("INSERT INTO vessels", {}, Exception("disk I/O error"))

    monkeypatch.setattr(VESSELS, "insert", failing_insert)
    content = make_workbook(VESSEL_HEADERS, [["9876543", "MV Pioneer", "Ro-Ro Ferry", None]])

    with pytest.raises(PersistenceError):
        commit_import(db, "vessels", content)

    assert count_rows(engine, "ship_types") == 0
    assert count_rows(engine, "vessels") == 0


def test_commit_past_deadline_is_rolled_back(db, engine):
    content = make_workbook(VESSEL_HEADERS, [["9876543", "MV Pioneer", "Ro-Ro Ferry", None]])

    with pytest.raises(CommitTimeoutError):
        commit_import(db, "vessels", content, timeout_seconds=1e-9)

    assert count_rows(engine, "vessels") == 0


def test_cadet_commit_fails_without_cadet_role(db, engine):
    with engine.begin() as conn:
        conn.execute(text("DELETE FROM roles WHERE role_name = 'CADET'"))
    content = make_workbook(CADET_HEADERS, [["Asha Rao", "asha@example.com", "DECK_CADET", None]])

    with pytest.raises(PersistenceError, match="CADET role not found"):
        commit_import(db, "cadets", content)

    assert count_rows(engine, "users") == 0


def test_task_commit_keys_on_title_and_ship_type(db, engine):
    tanker = seed_ship_type(engine, "Oil Tanker")
    content = make_workbook(
        ["part_number", "title", "ship_type", "mandatory_for_all"],
        [
            [1, "Take a sounding", "Oil Tanker", "yes"],
            [1, "Take a sounding", None, None],
            [1, "take a SOUNDING", "oil tanker", None],
        ],
    )

    result = commit_import(db, "tasks", content)

    assert outcomes(result) == [CommitOutcome.CREATED, CommitOutcome.CREATED, CommitOutcome.SKIPPED]
    with engine.begin() as conn:
        rows = conn.execute(
            text("SELECT ship_type_id, department, trainee_type, mandatory_for_all FROM task_templates ORDER BY id")
        ).mappings().all()
    assert rows[0]["ship_type_id"] == tanker
    assert rows[0]["department"] == "General"
    assert rows[0]["trainee_type"] == "ALL"
    assert bool(rows[0]["mandatory_for_all"]) is True
    assert rows[1]["ship_type_id"] is None


def test_assignment_commit_sets_status_and_actor(db, engine):
    cadet = seed_user(engine, "asha@example.com")
    admin = seed_user(engine, "admin@example.com", role_id=2)
    bulk = seed_ship_type(engine, "Bulk Carrier")
    seed_vessel(engine, "9876543", "MV Pioneer", bulk)
    seed_vessel(engine, "9123456", "MV Explorer", bulk)
    content = make_workbook(
        ["cadet_email", "vessel_imo", "date_joined", "date_left", "rank"],
        [
            ["asha@example.com", "9876543", "2022-01-01", "2022-06-30", "Deck Cadet"],
            ["asha@example.com", "9123456", "2023-01-01", None, None],
        ],
    )

    result = commit_import(db, "assignments", content, actor_user_id=admin)

    assert result.summary["created"] == 2
    with engine.begin() as conn:
        rows = conn.execute(
            text(
                "SELECT cadet_id, status, assigned_by_user_id FROM cadet_vessel_assignments ORDER BY date_joined"
            )
        ).mappings().all()
    assert [r["status"] for r in rows] == ["COMPLETED", "ACTIVE"]
    assert {r["cadet_id"] for r in rows} == {cadet}
    assert {r["assigned_by_user_id"] for r in rows} == {admin}

    again = commit_import(db, "assignments", content, actor_user_id=admin)
    assert again.summary["created"] == 0


def test_cadet_created_after_preview_is_skipped_at_commit(db, engine, monkeypatch):
    seed_user(engine, "asha@example.com")
    monkeypatch.setattr(CADETS, "conflicts", lambda db, rows: {})
    content = make_workbook(CADET_HEADERS, [["Asha Rao", "asha@example.com", "DECK_CADET", None]])

    result = commit_import(db, "cadets", content)

    row = result.results[0]
    assert row.preview_status is RowStatus.READY
    assert row.commit_outcome is CommitOutcome.SKIPPED
    assert row.issues == ("email already exists at commit time (skipped)",)
    assert count_rows(engine, "users") == 1


def test_assignment_overlapping_since_preview_is_skipped_at_commit(db, engine, monkeypatch):
    cadet = seed_user(engine, "asha@example.com")
    bulk = seed_ship_type(engine, "Bulk Carrier")
    vessel = seed_vessel(engine, "9876543", "MV Pioneer", bulk)
    seed_vessel(engine, "9123456", "MV Explorer", bulk)
    seed_assignment(engine, cadet, vessel, "2023-01-01")

    load_context = ASSIGNMENTS.load_context

    def context_without_assignments(db, rows):
        context = load_context(db, rows)
        context["assignments"] = []
        return context

    monkeypatch.setattr(ASSIGNMENTS, "load_context", context_without_assignments)
    content = make_workbook(
        ["cadet_email", "vessel_imo", "date_joined"],
        [["asha@example.com", "9123456", "2023-06-01"]],
    )

    result = commit_import(db, "assignments", content)

    row = result.results[0]
    assert row.preview_status is RowStatus.READY
    assert row.commit_outcome is CommitOutcome.SKIPPED
    assert row.issues == (COMMIT_OVERLAP_MESSAGE,)
    assert count_rows(engine, "cadet_vessel_assignments") == 1


def test_ship_type_is_rolled_back_with_a_skipped_vessel(db, engine, monkeypatch):
    insert = VESSELS.insert

    def insert_losing_first_race(db, row, batch):
        if row.normalized["imo_number"] == "9876543":
            raise IntegrityError(
                "INSERT INTO vessels", {}, Exception("UNIQUE constraint failed: vessels.imo_number")
            )
        return insert(db, row, batch)

    monkeypatch.setattr(VESSELS, "insert", insert_losing_first_race)
    content = make_workbook(
        VESSEL_HEADERS,
        [
            ["9876543", "MV Pioneer", "Ro-Ro Ferry", None],
            ["9123456", "MV Explorer", "Ro-Ro Ferry", None],
        ],
    )

    result = commit_import(db, "vessels", content)

    assert outcomes(result) == [CommitOutcome.SKIPPED, CommitOutcome.CREATED]
    assert count_rows(engine, "ship_types") == 1
    with engine.begin() as conn:
        ship_type_id = conn.execute(text("SELECT id FROM ship_types")).scalar_one()
        vessel_type_id = conn.execute(text("SELECT ship_type_id FROM vessels")).scalar_one()
    assert vessel_type_id == ship_type_id

from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from trb_import import main, models  # noqa: F401
from trb_import.database import Base, build_engine


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        conn.execute(text("INSERT INTO roles (id, role_name) VALUES (1, 'CADET'), (2, 'ADMIN')"))
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    original_startup = list(main.app.router.on_startup)
    main.app.router.on_startup = []
    main.app.dependency_overrides[main.get_db] = override_get_db

    test_client = TestClient(main.app)
    try:
        yield test_client
    finally:
        test_client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup


def make_workbook(headers, rows, title="Sheet1") -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = title
    sheet.append(list(headers))
    for row in rows:
        sheet.append(list(row))
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def count_rows(engine, table: str) -> int:
    with engine.begin() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()


def seed_ship_type(engine, name: str, type_code: str | None = None) -> int:
    with engine.begin() as conn:
        return conn.execute(
            text(
                "INSERT INTO ship_types (type_code, name) VALUES (:code, :name) RETURNING id"
            ),
            {"code": type_code or name.upper().replace(" ", "_"), "name": name},
        ).scalar_one()


def seed_user(engine, email: str, full_name: str = "Seeded User", role_id: int = 1) -> int:
    with engine.begin() as conn:
        return conn.execute(
            text(
                """
                INSERT INTO users (email, full_name, password_hash, role_id)
                VALUES (:email, :full_name, 'x', :role_id)
                RETURNING id
                """
            ),
            {"email": email, "full_name": full_name, "role_id": role_id},
        ).scalar_one()


def seed_vessel(engine, imo: str, name: str, ship_type_id: int) -> int:
    with engine.begin() as conn:
        return conn.execute(
            text(
                """
                INSERT INTO vessels (imo_number, name, ship_type_id, is_active)
                VALUES (:imo, :name, :ship_type_id, 1)
                RETURNING id
                """
            ),
            {"imo": imo, "name": name, "ship_type_id": ship_type_id},
        ).scalar_one()


def seed_assignment(engine, cadet_id, vessel_id, date_joined, date_left=None, status="ACTIVE"):
    with engine.begin() as conn:
        return conn.execute(
            text(
                """
                INSERT INTO cadet_vessel_assignments (cadet_id, vessel_id, date_joined, date_left, status)
                VALUES (:cadet_id, :vessel_id, :date_joined, :date_left, :status)
                RETURNING id
                """
            ),
            {
                "cadet_id": cadet_id,
                "vessel_id": vessel_id,
                "date_joined": date_joined,
                "date_left": date_left,
                "status": status,
            },
        ).scalar_one()

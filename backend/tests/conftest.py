from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_recon.models import (
    Base,
    IntakeRecord,
    Order,
    Patient,
    ReorderRequest,
    ReorderStatus,
    Reservation,
    ReservationStatus,
    ReviewStatus,
)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy drive it.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Seeder:
    """Writes rows through short committed sessions, like a separate app process."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _add(self, row):
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            return row

    def patient(self, identity, chat_id=None, merged_into=None, name=None):
        return self._add(
            Patient(
                identity=identity,
                external_chat_id=chat_id,
                merged_into_identity=merged_into,
                display_name=name,
            )
        )

    def reservation(
        self,
        reservation_id,
        patient_identity,
        reserved_date: date,
        reserved_time: str,
        status: str = "pending",
        created_at: datetime | None = None,
    ):
        row = Reservation(
            reservation_id=reservation_id,
            patient_identity=patient_identity,
            reserved_date=reserved_date,
            reserved_time=reserved_time,
            status=ReservationStatus(status),
        )
        if created_at is not None:
            row.created_at = created_at
        return self._add(row)

    def intake(self, patient_identity, linked=None, review="unset", created_at=None) -> int:
        row = IntakeRecord(
            patient_identity=patient_identity,
            answers={"q1": "yes"},
            linked_reservation_id=linked,
            review_status=ReviewStatus(review),
        )
        if created_at is not None:
            row.created_at = created_at
        return self._add(row).id

    def reorder(self, patient_identity, product_code, status, created_at=None) -> int:
        row = ReorderRequest(
            patient_identity=patient_identity,
            product_code=product_code,
            status=ReorderStatus(status),
        )
        if created_at is not None:
            row.created_at = created_at
        return self._add(row).id

    def order(self, patient_identity, product_code, paid_at, amount=13000) -> int:
        return self._add(
            Order(
                patient_identity=patient_identity,
                product_code=product_code,
                amount=amount,
                paid_at=paid_at,
            )
        ).id

    def get(self, model, **filters):
        with self._session_factory() as session:
            stmt = select(model)
            for name, value in filters.items():
                stmt = stmt.where(getattr(model, name) == value)
            return session.scalar(stmt)

    def all(self, model):
        with self._session_factory() as session:
            return list(session.scalars(select(model)).all())


@pytest.fixture()
def seeder(session_factory):
    return Seeder(session_factory)


@pytest.fixture()
def utc():
    def _utc(*parts):
        return datetime(*parts, tzinfo=timezone.utc)

    return _utc

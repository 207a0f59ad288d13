# agents/database.py
from typing import Iterable, Optional, Tuple

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from agents.reference_data import SEED_AIRPORTS, SEED_ALIASES, SEED_ROUTES, Airport

Base = declarative_base()


class AirportRow(Base):
    __tablename__ = "airports"
    code = Column(String(3), primary_key=True)
    name_en = Column(String, nullable=True)
    name_ar = Column(String, nullable=True)


class AirportAliasRow(Base):
    __tablename__ = "airport_aliases"
    id = Column(Integer, primary_key=True, autoincrement=True)
    alias = Column(String, nullable=False, unique=True, index=True)
    code = Column(String(3), ForeignKey("airports.code"), nullable=False)


class RouteRow(Base):
    __tablename__ = "routes"
    __table_args__ = (UniqueConstraint("origin", "destination", name="uq_route"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    origin = Column(String(3), ForeignKey("airports.code"), nullable=False)
    destination = Column(String(3), ForeignKey("airports.code"), nullable=False)


def make_engine(database_url: str) -> Engine:
    return create_engine(database_url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def seed_reference_data(session: Session) -> None:
    """Insert the default network if the airports table is empty."""
    if session.scalar(select(AirportRow.code).limit(1)) is not None:
        return
    session.add_all(AirportRow(code=a.code, name_en=a.name_en, name_ar=a.name_ar) for a in SEED_AIRPORTS)
    session.flush()
    session.add_all(AirportAliasRow(alias=alias, code=code) for alias, code in SEED_ALIASES)
    session.add_all(RouteRow(origin=o, destination=d) for o, d in SEED_ROUTES)
    session.commit()


class SqlReferenceDataStore:
    """ReferenceDataStore backed by the airports / airport_aliases / routes tables."""

    def __init__(self, engine: Engine, session_factory: Optional[sessionmaker] = None):
        self.engine = engine
        self.SessionLocal = session_factory or sessionmaker(bind=engine, autocommit=False, autoflush=False)

    @classmethod
    def from_url(cls, database_url: str, seed: bool = False) -> "SqlReferenceDataStore":
        engine = make_engine(database_url)
        store = cls(engine)
        if seed:
            init_db(engine)
            with store.SessionLocal() as session:
                seed_reference_data(session)
        return store

    def load_airports(self) -> Iterable[Airport]:
        with self.SessionLocal() as session:
            rows = session.execute(select(AirportRow.code, AirportRow.name_en, AirportRow.name_ar)).all()
        return [Airport(code, name_en, name_ar) for code, name_en, name_ar in rows]

    def load_aliases(self) -> Iterable[Tuple[str, str]]:
        with self.SessionLocal() as session:
            rows = session.execute(select(AirportAliasRow.alias, AirportAliasRow.code)).all()
        return [(alias, code) for alias, code in rows]

    def load_routes(self) -> Iterable[Tuple[str, str]]:
        with self.SessionLocal() as session:
            rows = session.execute(select(RouteRow.origin, RouteRow.destination)).all()
        return [(origin, destination) for origin, destination in rows]

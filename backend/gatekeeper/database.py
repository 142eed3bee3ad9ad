from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from gatekeeper.config import settings

# The replay ledger writes from verifier threads
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from lightcrl.config import settings

_url = settings.get_database_url

engine = create_engine(
    _url,
    pool_pre_ping=True,
    echo=settings.DEBUG,
    # the CRL scheduler opens sessions from worker threads
    connect_args={"check_same_thread": False} if _url.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)

def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)

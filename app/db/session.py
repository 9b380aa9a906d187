# app/db/session.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.core.config import settings

# The engine owns the connection pool for the ticket database.
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

# SessionLocal is a factory for Session objects. Request handlers get one
# per request; background pollers open one per iteration.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

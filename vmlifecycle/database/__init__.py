from .database import Base, ScopedSession, SessionLocal, engine

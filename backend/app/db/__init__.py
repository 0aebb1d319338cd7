from app.db.database import Base, engine, AsyncSessionLocal, get_db

__all__ = ["Base", "engine", "AsyncSessionLocal", "get_db"]

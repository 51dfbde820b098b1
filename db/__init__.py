"""Database package for the trial activation pipeline."""
from db.connection import UnitOfWork, dispose_engine, get_db, init_engine, unit_of_work

__all__ = ["UnitOfWork", "init_engine", "get_db", "unit_of_work", "dispose_engine"]

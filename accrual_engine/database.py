from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from accrual_engine.config import SQLALCHEMY_DATABASE_URL


def configure_sqlite(target: Engine) -> None:
	"""Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs behave."""
	if target.dialect.name != "sqlite":
		return

	@event.listens_for(target, "connect")
	def _on_connect(dbapi_connection, connection_record):
		dbapi_connection.isolation_level = None

	@event.listens_for(target, "begin")
	def _on_begin(conn):
		conn.exec_driver_sql("BEGIN")


_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args)
configure_sqlite(engine)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass

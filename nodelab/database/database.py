from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from nodelab.config import settings


def build_engine(database_url: str, **engine_options) -> Engine:
    """
    설정된 URL로 SQLAlchemy 엔진을 생성합니다.

    SQLite인 경우 여러 스레드(요청 처리, 백그라운드 조정 작업)에서 연결을 공유할 수 있도록
    check_same_thread를 끄고, RESTRICT 외래 키가 동작하도록 foreign_keys를 켭니다.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False}, **engine_options)

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(database_url, pool_pre_ping=True, **engine_options)


# SQLAlchemy 엔진 생성
engine = build_engine(settings.database_url)

# autocommit=False, autoflush=False로 설정하여, 명시적으로 commit을 호출해야 DB에 반영됩니다.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()

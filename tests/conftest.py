# tests/conftest.py
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nodelab.database import models
from nodelab.database.database import Base, build_engine
from nodelab.repositories.sqlalchemy import SqlalchemyImageRepository, SqlalchemyNodeRepository


@pytest.fixture
def db_session():
    """테스트마다 새로 만드는 인메모리 SQLite 세션. (외래 키/CHECK 제약 활성화)"""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def image_repo(db_session) -> SqlalchemyImageRepository:
    return SqlalchemyImageRepository(db_session)


@pytest.fixture
def node_repo(db_session) -> SqlalchemyNodeRepository:
    return SqlalchemyNodeRepository(db_session)


@pytest.fixture
def base_image(image_repo) -> models.Image:
    """카탈로그에 등록된 베이스 이미지 하나."""
    return image_repo.create(models.Image(id="img-base", name="ubuntu-base", path="ubuntu-base.qcow2"))

import logging
import uuid

from .database import engine, SessionLocal, Base
from .models import Image

logger = logging.getLogger(__name__)


def initialize_db(seed_image_name: str = None, seed_image_path: str = None):
    """
    DB와 테이블을 생성하고, 요청 시 베이스 이미지 하나를 카탈로그에 등록합니다.
    SQLAlchemy 모델을 사용하여 모든 작업을 수행합니다.
    """
    logger.info("Initializing database schema...")

    # 모든 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    Base.metadata.create_all(bind=engine)

    if not seed_image_name or not seed_image_path:
        return

    db = SessionLocal()
    try:
        if db.query(Image).filter(Image.name == seed_image_name).first():
            logger.info("Seed image '%s' already registered, skipping.", seed_image_name)
            return

        db.add(Image(
            id=str(uuid.uuid4()),
            name=seed_image_name,
            path=seed_image_path,
            description="Seed base image",
        ))
        db.commit()
        logger.info("Registered seed image '%s' (%s).", seed_image_name, seed_image_path)

    except Exception:
        logger.exception("Failed to seed image catalog")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    initialize_db()

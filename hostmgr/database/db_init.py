import logging

from .database import Base, build_engine
from . import models  # noqa: F401  (테이블 등록을 위해 모델을 임포트)

logger = logging.getLogger(__name__)


def initialize_db(engine):
    """
    VM 메타데이터 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    """
    Base.metadata.create_all(bind=engine)
    logger.info("VM metadata tables ready (%s).", engine.url)


if __name__ == '__main__':
    from hostmgr.config import Settings
    from hostmgr.utils.logging import configure_logging

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    initialize_db(build_engine(settings.database_url))

"""
hostmgr 로그 설정.

각 모듈은 `logging.getLogger(__name__)`으로 로거를 얻고, 프로세스 시작 시
configure_logging()을 한 번 호출해 출력 형식과 레벨을 정합니다.
"""

import logging
import sys

LOG_FORMAT = '%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'
HANDLER_NAME = 'hostmgr-console'

# 요청/쿼리마다 로그를 남기는 외부 로거
NOISY_LOGGERS = ('sqlalchemy.engine', 'sqlalchemy.pool')


def configure_logging(level=logging.INFO, stream=None) -> logging.Handler:
    """
    루트 로거에 hostmgr 콘솔 핸들러를 설치합니다.

    여러 번 호출해도 hostmgr 핸들러만 교체하고 다른 핸들러는 건드리지 않습니다.

    Args:
        level: 로그 레벨. 'debug' 같은 이름 문자열도 받습니다.
        stream: 출력 대상. 기본값은 표준 출력입니다.

    Returns:
        설치된 핸들러.

    Raises:
        ValueError: 알 수 없는 레벨 이름일 때.
    """
    if isinstance(level, str):
        name = level.upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level '{name}'")

    root_logger = logging.getLogger()
    for handler in [h for h in root_logger.handlers if h.get_name() == HANDLER_NAME]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    logging.getLogger('hostmgr').setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return handler

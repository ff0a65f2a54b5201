import logging

from hostmgr.config import Settings
from hostmgr.provisioning import InMemoryBackend, VagrantBackend, ProvisioningBackend
from hostmgr.repositories import IVMRepository, InMemoryVMRepository
from hostmgr.services.lifecycle_service import LifecycleService

logger = logging.getLogger(__name__)


def build_repository(settings: Settings) -> IVMRepository:
    if settings.store == "sqlalchemy":
        from hostmgr.database.database import build_engine, build_session_factory
        from hostmgr.database.db_init import initialize_db
        from hostmgr.repositories.sqlalchemy import SqlalchemyVMRepository

        engine = build_engine(settings.database_url)
        initialize_db(engine)
        return SqlalchemyVMRepository(build_session_factory(engine))
    return InMemoryVMRepository()


def build_backend(settings: Settings) -> ProvisioningBackend:
    if settings.backend == "vagrant":
        backend = VagrantBackend(
            settings.vagrant_root,
            vagrant_bin=settings.vagrant_bin,
            provider=settings.vagrant_provider,
        )
        logger.info("Using %s", backend.init())
        return backend
    if settings.backend == "libvirt":
        # libvirt 바인딩은 선택 의존성이므로 이 백엔드를 고를 때만 임포트합니다.
        from hostmgr.provisioning.libvirt_backend import LibvirtBackend

        return LibvirtBackend(uri=settings.libvirt_uri, image_dir=settings.image_dir)
    return InMemoryBackend()


def build_service(settings: Settings) -> LifecycleService:
    """설정에 따라 저장소와 백엔드를 만들고 LifecycleService에 주입합니다."""
    service = LifecycleService(
        vm_repo=build_repository(settings),
        backend=build_backend(settings),
        default_timeout=settings.adapter_timeout,
        max_workers=settings.max_workers,
        default_page_limit=settings.default_page_limit,
        max_page_limit=settings.max_page_limit,
    )
    logger.info("Lifecycle service ready (store=%s, backend=%s).", settings.store, settings.backend)
    return service

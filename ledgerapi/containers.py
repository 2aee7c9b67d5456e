from dependency_injector import containers, providers

from ledgerapi.config import settings
from ledgerapi.database.connection import SessionLocal
from ledgerapi.services.ai_client import GenerativeAIClient
from ledgerapi.services.credential_pool import CredentialPoolManager
from ledgerapi.services.notification_service import NotificationDispatcher


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Object(settings)
    session_factory = providers.Object(SessionLocal)


class ServiceModule(containers.DeclarativeContainer):
    """Process-wide service singletons.

    요청 단위 서비스(원장, 보상, 기프트코드, 충전, 생성 비용)는
    ledgerapi.deps에서 요청 세션으로 생성합니다.
    """

    config = providers.DependenciesContainer()

    ai_client = providers.Singleton(GenerativeAIClient, settings=config.config)
    credential_pool = providers.Singleton(
        CredentialPoolManager,
        session_factory=config.session_factory,
        settings=config.config,
        ai_client=ai_client,
    )
    notification_dispatcher = providers.Singleton(
        NotificationDispatcher, session_factory=config.session_factory
    )


class Container(containers.DeclarativeContainer):
    """Application container."""

    config = providers.Container(ConfigModule)
    services = providers.Container(ServiceModule, config=config)

import secrets

from fastapi import Depends, Header

from labelops.config.logging import get_logger
from labelops.config.settings import Settings, get_settings
from labelops.v1.core.exceptions import ConfigurationError, UnauthorizedError

logger = get_logger(__name__)


def check_trigger_secret(settings: Settings, authorization: str | None) -> None:
    """
    Verify a worker trigger request against the configured bearer secret.

    Behavior based on CRON_SECRET and ENVIRONMENT:
    - secret configured: the request must carry `Authorization: Bearer <secret>`
    - secret missing outside production: allowed, logged as a warning
    - secret missing in production: rejected as a configuration error
    """
    cron_secret = settings.cron_secret

    if not cron_secret:
        if settings.is_production:
            logger.error(
                "CRON_SECRET not set in production; rejecting worker trigger"
            )
            raise ConfigurationError(
                "Worker trigger secret is not configured",
                details={"setting": "CRON_SECRET"},
            )
        logger.warning("CRON_SECRET not set; worker trigger is unauthenticated")
        return

    expected = f"Bearer {cron_secret}"
    if authorization is None or not secrets.compare_digest(
        authorization.encode(), expected.encode()
    ):
        logger.warning("Unauthorized worker trigger request")
        raise UnauthorizedError()


async def verify_trigger_secret(
    authorization: str | None = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Dependency guarding worker trigger endpoints."""
    check_trigger_secret(settings, authorization)


async def get_actor(x_actor: str | None = Header(None, alias="X-Actor")) -> str:
    """Name of the operator performing an administrative action, for audit logs."""
    return x_actor or "anonymous"


# Convenience type aliases for dependency injection
TriggerAuthDep = Depends(verify_trigger_secret)
ActorDep = Depends(get_actor)

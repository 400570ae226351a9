import pytest

from factories import TEST_SECRET, make_settings
from labelops.v1.core.exceptions import ConfigurationError, UnauthorizedError
from labelops.v1.core.security import check_trigger_secret, get_actor


def test_matching_bearer_secret_is_accepted():
    settings = make_settings(cron_secret="s3cret")

    check_trigger_secret(settings, "Bearer s3cret")


@pytest.mark.parametrize(
    "authorization", [None, "", "Bearer wrong", "s3cret", "bearer s3cret", "Basic s3cret"]
)
def test_wrong_or_missing_secret_is_unauthorized(authorization):
    settings = make_settings(cron_secret="s3cret")

    with pytest.raises(UnauthorizedError) as exc_info:
        check_trigger_secret(settings, authorization)

    assert exc_info.value.status_code == 401


def test_missing_secret_in_production_fails_closed():
    settings = make_settings(environment="production", debug=False, cron_secret=None)

    with pytest.raises(ConfigurationError) as exc_info:
        check_trigger_secret(settings, "Bearer anything")

    assert exc_info.value.status_code == 500


def test_missing_secret_outside_production_is_allowed():
    settings = make_settings(environment="development", cron_secret=None)

    check_trigger_secret(settings, None)


async def test_actor_defaults_to_anonymous():
    assert await get_actor(None) == "anonymous"
    assert await get_actor("ops@example.com") == "ops@example.com"


class TestTriggerEndpointAuth:
    async def test_wrong_secret_returns_401(self, async_client):
        response = await async_client.post(
            "/v1/workers/cleanup", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["message"] == "Unauthorized"

    async def test_missing_header_returns_401(self, async_client):
        response = await async_client.get("/v1/workers/cleanup")

        assert response.status_code == 401

    async def test_correct_secret_runs_worker(self, async_client):
        response = await async_client.get(
            "/v1/workers/cleanup", headers={"Authorization": f"Bearer {TEST_SECRET}"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["worker"] == "cleanup"

    async def test_production_without_secret_returns_500(self, app, async_client):
        from labelops.config.settings import get_settings

        production = make_settings(environment="production", debug=False, cron_secret=None)
        app.dependency_overrides[get_settings] = lambda: production

        response = await async_client.post(
            "/v1/workers/cleanup", headers={"Authorization": "Bearer anything"}
        )

        assert response.status_code == 500
        assert response.json()["error"]["details"] == {"setting": "CRON_SECRET"}

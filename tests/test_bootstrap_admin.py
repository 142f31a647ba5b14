import asyncio

import pytest
from fastapi.testclient import TestClient

from authkernel.app import create_app
from authkernel.storage.models import Role
from scripts.bootstrap_admin import bootstrap_admin

PASSWORD = "AdminPassword123!"


class TestBootstrapAdmin:
    async def test_creates_admin(self, runtime):
        result = await bootstrap_admin(
            "Root@Example.com", PASSWORD, "Root", "Admin", runtime=runtime
        )

        assert result["status"] == "created"
        user = runtime.store.get_user_by_email("root@example.com")
        assert user.role == Role.ADMIN

    async def test_promotes_existing_user(self, runtime):
        registered = await runtime.sessions.register("ada@example.com", PASSWORD, "Ada", "Lovelace")

        result = await bootstrap_admin(
            "ada@example.com", PASSWORD, "Ada", "Lovelace", role="SUPER_ADMIN", runtime=runtime
        )

        assert result == {"user_id": registered.user.id, "email": "ada@example.com", "status": "promoted"}
        assert runtime.store.get_user(registered.user.id).role == Role.SUPER_ADMIN

    async def test_existing_admin_unchanged(self, runtime):
        await bootstrap_admin("root@example.com", PASSWORD, "Root", "Admin", runtime=runtime)

        result = await bootstrap_admin("root@example.com", PASSWORD, "Root", "Admin", runtime=runtime)

        assert result["status"] == "already_admin"

    async def test_dry_run_writes_nothing(self, runtime):
        result = await bootstrap_admin(
            "root@example.com", PASSWORD, "Root", "Admin", dry_run=True, runtime=runtime
        )

        assert result["status"] == "dry_run"
        assert runtime.store.get_user_by_email("root@example.com") is None

    async def test_rejects_non_admin_role(self, runtime):
        with pytest.raises(ValueError):
            await bootstrap_admin("root@example.com", PASSWORD, "Root", "Admin", role="USER", runtime=runtime)

    @pytest.mark.parametrize("password", ["Adm1n&Pass/word", "Adm1n'Pass<word>", "  Adm1n!Password  "])
    def test_admin_can_log_in_over_http(self, runtime, password):
        asyncio.run(
            bootstrap_admin("boss@example.com", password, "Boss", "Admin", runtime=runtime)
        )
        client = TestClient(create_app(runtime))

        response = client.post(
            "/api/auth/login", json={"email": "boss@example.com", "password": password}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "ADMIN"

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from tale_forge.backend.services.identity import LocalIdentity, SupabaseIdentity
from tale_forge.common.config import Settings
from tale_forge.common.errors import UnauthorizedError

SETTINGS = Settings(supabase_url="https://proj.supabase.co", supabase_anon_key="anon")


def _response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    return resp


class TestSupabaseIdentity:
    @pytest.mark.asyncio
    async def test_valid_token(self) -> None:
        mock_get = AsyncMock(return_value=_response({"id": "u1", "email": "a@b.c"}))
        with patch("httpx.AsyncClient.get", mock_get):
            user = await SupabaseIdentity(SETTINGS).validate("jwt")
        assert (user.id, user.email) == ("u1", "a@b.c")
        assert mock_get.call_args.args[0] == "https://proj.supabase.co/auth/v1/user"
        assert mock_get.call_args.kwargs["headers"] == {"apikey": "anon", "Authorization": "Bearer jwt"}

    @pytest.mark.asyncio
    async def test_rejected_token(self) -> None:
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_response({}, status=401))):
            with pytest.raises(UnauthorizedError):
                await SupabaseIdentity(SETTINGS).validate("expired")

    @pytest.mark.asyncio
    async def test_auth_unreachable(self) -> None:
        with patch("httpx.AsyncClient.get", AsyncMock(side_effect=httpx.ConnectTimeout("slow"))):
            with pytest.raises(UnauthorizedError):
                await SupabaseIdentity(SETTINGS).validate("jwt")


class TestLocalIdentity:
    @pytest.mark.asyncio
    async def test_registered_token(self, store) -> None:
        store.register_user("tok", "u1", email="a@b.c")
        assert (await LocalIdentity(store).validate("tok")).id == "u1"

    @pytest.mark.asyncio
    async def test_unknown_token(self, store) -> None:
        with pytest.raises(UnauthorizedError):
            await LocalIdentity(store).validate("nope")

"""Pytest configuration and fixtures."""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from messenger_outreach.api.dependencies import (
    SESSION_COOKIE,
    get_app_settings,
    get_rate_limiter,
    get_storage,
    sign_session,
)
from messenger_outreach.api.main import create_app
from messenger_outreach.core.config import Settings
from messenger_outreach.models import (
    Conversation,
    DeliveryErrorType,
    FacebookPage,
    OutgoingMessage,
    SendResult,
    User,
    utc_now,
)
from messenger_outreach.services.channels.messenger import MessengerAdapter, get_messenger_adapter
from messenger_outreach.services.dispatch.rate_limit import RateLimitTracker
from messenger_outreach.services.facebook.client import GraphAPIClient
from messenger_outreach.storage.memory import InMemoryStorage

SESSION_SECRET = "test-session-secret"
APP_SECRET = "test-app-secret"


class FakeAdapter(MessengerAdapter):
    """Messenger adapter that records sends instead of calling Facebook."""

    def __init__(self) -> None:
        super().__init__(
            graph_client=GraphAPIClient(app_id="app", app_secret=APP_SECRET),
            app_secret=APP_SECRET,
        )
        self.sent: list[OutgoingMessage] = []
        self.failures: dict[str, tuple[str, DeliveryErrorType, float | None]] = {}
        self.on_send = None

    def fail(
        self,
        recipient_id: str,
        error_type: DeliveryErrorType = DeliveryErrorType.OTHER,
        retry_after: float | None = None,
    ) -> None:
        self.failures[recipient_id] = (f"Send failed ({error_type.value})", error_type, retry_after)

    async def send_message(self, message: OutgoingMessage) -> SendResult:
        self.sent.append(message)
        if self.on_send is not None:
            await self.on_send(message)
        if message.recipient_id in self.failures:
            error, error_type, retry_after = self.failures[message.recipient_id]
            return SendResult(
                recipient_id=message.recipient_id,
                success=False,
                error=error,
                error_type=error_type,
                retry_after=retry_after,
            )
        return SendResult(
            recipient_id=message.recipient_id,
            success=True,
            message_id=f"mid.{len(self.sent)}",
        )

    @property
    def recipients(self) -> list[str]:
        return [m.recipient_id for m in self.sent]


@pytest.fixture
def test_settings():
    """Settings with small batches and no delays."""
    return Settings(
        _env_file=None,
        session_secret=SESSION_SECRET,
        batch_size=2,
        message_delay_seconds=0,
        batch_delay_seconds=0,
        cancellation_check_interval=1,
        progress_checkpoint_interval=1,
        webhook_verify_token="verify-me",
        facebook_app_secret="",
        cron_secret="",
    )


@pytest.fixture
def storage():
    """Create in-memory storage for tests."""
    return InMemoryStorage()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def rate_limiter():
    return RateLimitTracker(max_calls=1000, period=60)


@pytest.fixture
def app(storage, fake_adapter, test_settings, rate_limiter):
    """Create test application wired to in-memory storage and the fake adapter."""
    application = create_app()
    application.dependency_overrides[get_storage] = lambda: storage
    application.dependency_overrides[get_messenger_adapter] = lambda: fake_adapter
    application.dependency_overrides[get_app_settings] = lambda: test_settings
    application.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    return application


@pytest_asyncio.fixture
async def client(app):
    """Create test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def user(storage):
    """Signed-in page admin."""
    user = User(
        facebook_id="fb-user-1",
        name="Maria Santos",
        facebook_access_token="user-token",
        facebook_token_expires_at=utc_now() + timedelta(days=50),
    )
    await storage.save_user(user)
    return user


@pytest_asyncio.fixture
async def auth_client(app, user):
    """Test client carrying a session cookie for ``user``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={SESSION_COOKIE: sign_session(user.id, SESSION_SECRET)},
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def page(storage, user):
    """Connected page with a page token."""
    page = FacebookPage(
        facebook_page_id="page-1",
        user_id=user.id,
        name="Santos Bakery",
        access_token="page-token",
    )
    await storage.save_page(page)
    return page


@pytest_asyncio.fixture
async def make_conversation(storage, user, page):
    """Factory for conversations of ``page``."""

    async def _make(sender_id: str, sender_name: str = "Facebook User", minutes_ago: int = 5, **kwargs):
        conversation = Conversation(
            user_id=user.id,
            page_id=page.facebook_page_id,
            sender_id=sender_id,
            sender_name=sender_name,
            last_message="Hi",
            last_message_time=utc_now() - timedelta(minutes=minutes_ago),
            message_count=2,
            **kwargs,
        )
        await storage.save_conversation(conversation)
        return conversation

    return _make

"""Test configuration."""
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from decimal import Decimal
from pathlib import Path

from alembic import command
from alembic.config import Config
import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.orm import Session

SELLER = "0x1111111111111111111111111111111111111111"
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

# --- Default environment, before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./policykit_test.db")
os.environ.setdefault("POLICYKIT_ENV", "test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("PAYWALL_SELLER_ADDRESS", SELLER)
os.environ.setdefault(
    "PAYWALL_PRICING",
    json.dumps({"/api/premium": "0.05", "/api/tools/*": {"priceUsd": "0.02", "description": "Tool call"}}),
)

from policykit.main import app  # noqa: E402
from policykit import db  # noqa: E402
from policykit.models import Base  # noqa: E402
from policykit.schemas.protocol import PaymentChallenge, PaymentProof, PaywallConfig, PaywallContext  # noqa: E402
from policykit.services.paywall import Paywall, build_paywall  # noqa: E402
from policykit.services.receipts import InMemoryReceiptStore  # noqa: E402

DB_PATH = Path("./policykit_test.db")
FAKE_SIGNATURE = "0x" + "ab" * 65


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.attributes["configure_logger"] = False
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file for the session
db.close_engine()
if DB_PATH.exists():
    DB_PATH.unlink()

# --- (2) Build the schema through Alembic only
_run_migrations()

app.state.paywall = build_paywall()


@pytest.fixture(autouse=True)
def _empty_tables() -> Iterator[None]:
    yield
    engine = db.get_engine()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(delete(table))


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = db.get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def paywall_config() -> PaywallConfig:
    return PaywallConfig(
        seller_address=SELLER,
        default_asset=USDC_BASE_SEPOLIA,
        default_chain_id=84532,
        pricing={
            "/api/premium": Decimal("0.05"),
            "/api/cheap": Decimal("0.03"),
            "/api/tools/*": {"priceUsd": "0.02", "description": "Tool call"},
        },
    )


class Clock:
    """Settable unix-seconds clock."""

    def __init__(self, now: int = 1_800_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


class SellerApp:
    """A small FastAPI app whose priced routes sit behind a paywall."""

    def __init__(self, paywall: Paywall) -> None:
        self.paywall = paywall
        self.calls: list[PaywallContext] = []
        self.app = FastAPI()

        @paywall.route(self.app, "/api/premium")
        async def premium(request: Request, ctx: PaywallContext) -> dict[str, object]:
            self.calls.append(ctx)
            return {"result": "premium content", "paid": ctx.paid, "nonce": ctx.nonce}

        @paywall.route(self.app, "/api/cheap", methods=("GET", "POST"))
        def cheap(request: Request, ctx: PaywallContext) -> dict[str, object]:
            self.calls.append(ctx)
            return {"result": "cheap content"}

        @paywall.route(self.app, "/api/free", methods=("GET",))
        async def free(request: Request, ctx: PaywallContext) -> dict[str, object]:
            self.calls.append(ctx)
            return {"result": "free content", "paid": ctx.paid}

    def client(self, base_url: str = "http://seller.test") -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=self.app), base_url=base_url)


@pytest.fixture
def make_seller(paywall_config: PaywallConfig, clock: Clock) -> Callable[..., SellerApp]:
    def _factory(**kwargs) -> SellerApp:
        config = kwargs.pop("config", paywall_config)
        kwargs.setdefault("receipt_store", InMemoryReceiptStore())
        kwargs.setdefault("clock", clock)
        return SellerApp(Paywall(config, **kwargs))

    return _factory


def make_proof(challenge: PaymentChallenge, **overrides) -> PaymentProof:
    """Proof that satisfies ``challenge`` unless fields are overridden."""

    fields = {
        "signature": FAKE_SIGNATURE,
        "payer": "0x2222222222222222222222222222222222222222",
        "nonce": challenge.nonce,
        "expiry": challenge.expiry,
        "amount": challenge.max_amount_required,
        "asset": challenge.asset,
        "chain_id": int(challenge.network.split(":")[1]),
    }
    fields.update(overrides)
    return PaymentProof(**fields)


@pytest.fixture
def proof_for() -> Callable[..., PaymentProof]:
    return make_proof

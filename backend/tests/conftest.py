"""
テスト共通設定

インメモリSQLite (StaticPool) 上で購読エンジンを動かし、
決済ゲートウェイと通知はテスト用のフェイクに置き換える。
"""
import json
from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.database import Base, get_db
from app.core.errors import GatewayError
from app.core.rate_limit import limiter
from app.core.timeutil import utcnow
from app.main import app as fastapi_app
from app.models import Payment, Subscription, Tenant
from app.routers.deps import get_current_tenant, require_tenant
from app.routers.webhooks_payment import get_session_factory
from app.services.notification_service import get_notifier
from app.services.plan_catalog import compute_price
from app.services.stripe_service import GatewayPayment, get_payment_gateway

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# =========================================================
# フェイク
# =========================================================

class FakeGateway:
    """Checkout Session をメモリ上で管理するゲートウェイ"""

    def __init__(self):
        self.sessions: dict[str, GatewayPayment] = {}
        self.expired: list[str] = []
        self.fail_checkout = False
        self.fail_fetch = False
        self.fetch_count = 0
        self._seq = 0

    def create_checkout(self, payment, subscription, tenant):
        if self.fail_checkout:
            raise GatewayError("決済ページの作成に失敗しました")
        self._seq += 1
        session_id = f"cs_test_{self._seq}"
        self.sessions[session_id] = GatewayPayment(
            id=session_id,
            status="pending",
            external_reference=str(payment.id),
            amount=payment.amount,
        )
        return session_id, f"https://checkout.example.test/{session_id}"

    def set_status(self, session_id: str, status: str, status_detail: str = None):
        self.sessions[session_id] = replace(
            self.sessions[session_id],
            status=status,
            status_detail=status_detail,
            payment_intent_id=f"pi_{session_id}",
            payment_method="card",
        )

    def fetch_payment(self, session_id: str, event_type: str = None) -> GatewayPayment:
        self.fetch_count += 1
        if self.fail_fetch or session_id not in self.sessions:
            raise GatewayError("決済情報の取得に失敗しました")
        return replace(self.sessions[session_id])

    def expire_checkout(self, session_id):
        self.expired.append(session_id)
        return True

    def construct_event(self, payload: bytes, sig_header: str):
        if sig_header != "valid-signature":
            raise ValueError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


class FakeNotifier:
    """送信内容を記録するだけの通知"""

    def __init__(self):
        self.sent: list[tuple] = []
        self.succeed = True

    def _record(self, kind, *args, **kwargs):
        self.sent.append((kind, args, kwargs))
        return self.succeed

    def kinds(self) -> list[str]:
        return [s[0] for s in self.sent]

    def notify_suspended(self, tenant, subscription):
        return self._record("suspended", tenant.id, subscription.id)

    def notify_renewal_reminder(self, tenant, subscription, days_left, urgent=False):
        return self._record("renewal_urgent" if urgent else "renewal_reminder", tenant.id, subscription.id, days_left=days_left)

    def notify_payment_failed(self, tenant, subscription, payment):
        return self._record("payment_failed", tenant.id, payment.id)

    def notify_downgrade_payment_required(self, tenant, subscription, payment, checkout_url=None):
        return self._record("downgrade_payment_required", tenant.id, payment.id)

    def notify_cancelled(self, tenant, subscription):
        return self._record("cancelled", tenant.id, subscription.id)


# =========================================================
# フィクスチャ
# =========================================================

@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def tenant(db):
    t = Tenant(name="テストサロン", email="owner@example.com", plan_type="FREE", is_active=True)
    db.add(t)
    db.commit()
    return t


@pytest.fixture
def other_tenant(db):
    t = Tenant(name="別のサロン", email="other@example.com", plan_type="FREE", is_active=True)
    db.add(t)
    db.commit()
    return t


@pytest.fixture
def make_subscription(db):
    """購読行を直接作成するヘルパー"""

    def _make(tenant, plan_type="BASIC", status="ACTIVE", billing_cycle="MONTHLY",
              next_billing_date="default", meta=None, price_amount=None):
        if next_billing_date == "default":
            next_billing_date = None if plan_type == "FREE" else utcnow() + timedelta(days=20)
        sub = Subscription(
            tenant_id=tenant.id,
            plan_type=plan_type,
            status=status,
            billing_cycle=billing_cycle,
            price_amount=compute_price(plan_type, billing_cycle) if price_amount is None else price_amount,
            currency="jpy",
            start_date=utcnow() - timedelta(days=10),
            next_billing_date=next_billing_date,
            meta=meta or {},
        )
        db.add(sub)
        db.commit()
        return sub

    return _make


@pytest.fixture
def make_payment(db):
    """決済行を直接作成するヘルパー"""

    def _make(sub, status="APPROVED", kind="renewal", amount=None, plan_type=None,
              paid_at=None, created_at=None, gateway_order_id=None):
        payment = Payment(
            subscription_id=sub.id,
            plan_type=plan_type or sub.plan_type,
            kind=kind,
            amount=sub.price_amount if amount is None else amount,
            currency="jpy",
            billing_cycle=sub.billing_cycle,
            status=status,
            paid_at=paid_at,
            gateway_order_id=gateway_order_id,
        )
        if created_at is not None:
            payment.created_at = created_at
        db.add(payment)
        db.commit()
        return payment

    return _make


@pytest.fixture
def client(db, tenant, gateway, notifier):
    """テナントでログイン済みのテストクライアント"""
    limiter.enabled = False

    def override_get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[require_tenant] = lambda: tenant
    fastapi_app.dependency_overrides[get_current_tenant] = lambda: tenant
    fastapi_app.dependency_overrides[get_payment_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal

    yield TestClient(fastapi_app)

    fastapi_app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture
def session_factory(db):
    """スケジューラ・Webhook処理用のセッションファクトリ"""
    return TestingSessionLocal

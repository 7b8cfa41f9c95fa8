"""購読関連の通知メール送信 (Resend + Jinja2)

送信失敗は呼び出し元の処理を止めない。ログに残して False を返す。
"""
from pathlib import Path

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings
from app.core.logging import get_logger
from app.services.plan_catalog import get_plan

logger = get_logger(__name__)

# テンプレートエンジン
template_dir = Path(__file__).parent.parent / "templates" / "email"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)


def _plan_name(plan_type) -> str:
    return get_plan(plan_type)["name"]


def _format_date(value) -> str:
    return value.strftime("%Y年%m月%d日") if value else "-"


def _format_amount(amount, currency: str = "jpy") -> str:
    if (currency or "").lower() == "jpy":
        return f"¥{amount:,}"
    return f"{amount:,} {currency.upper()}"


class Notifier:
    """テナント宛ての購読通知"""

    def __init__(self, api_key: str = None, from_email: str = None, site_name: str = None):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL
        self.site_name = site_name or settings.SITE_NAME

    def _send(self, to_email: str, subject: str, template_name: str, **context) -> bool:
        if not to_email:
            logger.warning(f"宛先メールアドレスなし: template={template_name}")
            return False
        try:
            resend.api_key = self.api_key
            template = jinja_env.get_template(template_name)
            html = template.render(site_name=self.site_name, site_url=settings.SITE_URL, **context)

            resend.Emails.send({
                "from": self.from_email,
                "to": [to_email],
                "subject": f"【{self.site_name}】{subject}",
                "html": html,
            })
            logger.info(f"通知メール送信: {to_email} ({template_name})")
            return True
        except Exception as e:
            logger.error(f"通知メール送信失敗: {to_email} ({template_name}) - {e}")
            return False

    def notify_suspended(self, tenant, subscription) -> bool:
        """支払期限切れによる利用停止"""
        return self._send(
            tenant.email,
            "ご契約が停止されました",
            "subscription_suspended.html",
            name=tenant.name,
            plan_name=_plan_name(subscription.plan_type),
            due_date=_format_date(subscription.next_billing_date),
        )

    def notify_renewal_reminder(self, tenant, subscription, days_left: int, urgent: bool = False) -> bool:
        """更新日の事前案内 (urgent=True で期限間近)"""
        subject = f"【至急】ご契約の更新期限まであと{days_left}日です" if urgent else "ご契約更新のご案内"
        return self._send(
            tenant.email,
            subject,
            "renewal_urgent.html" if urgent else "renewal_reminder.html",
            name=tenant.name,
            plan_name=_plan_name(subscription.plan_type),
            billing_date=_format_date(subscription.next_billing_date),
            days_left=days_left,
            amount=_format_amount(subscription.price_amount, subscription.currency),
        )

    def notify_payment_failed(self, tenant, subscription, payment) -> bool:
        """決済失敗"""
        return self._send(
            tenant.email,
            "お支払いが完了しませんでした",
            "payment_failed.html",
            name=tenant.name,
            plan_name=_plan_name(payment.plan_type),
            amount=_format_amount(payment.amount, payment.currency),
            reason=payment.failure_reason,
        )

    def notify_downgrade_payment_required(self, tenant, subscription, payment, checkout_url: str = None) -> bool:
        """ダウングレード適用後の新プラン決済依頼"""
        return self._send(
            tenant.email,
            "プラン変更後のお支払いのお願い",
            "downgrade_payment_required.html",
            name=tenant.name,
            plan_name=_plan_name(payment.plan_type),
            amount=_format_amount(payment.amount, payment.currency),
            checkout_url=checkout_url or payment.checkout_url,
        )

    def notify_cancelled(self, tenant, subscription) -> bool:
        """解約完了"""
        return self._send(
            tenant.email,
            "ご解約を承りました",
            "subscription_cancelled.html",
            name=tenant.name,
            plan_name=_plan_name(subscription.plan_type),
        )


_notifier = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier

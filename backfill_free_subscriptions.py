#!/usr/bin/env python3
"""購読行を持たないテナントに FREE/ACTIVE の購読を作成するスクリプト

使い方: python backfill_free_subscriptions.py [--dry-run]
"""
import os
import sys
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend"))

from sqlalchemy import select

from app.core.database import SessionLocal
from app.models.subscription import Subscription
from app.models.tenant import Tenant
from app.services.plan_change_service import ensure_free_subscription


def find_tenants_without_subscription(db) -> list[Tenant]:
    """有効な購読行がひとつもないテナント"""
    live = select(Subscription.tenant_id).where(Subscription.status != "CANCELLED")
    return db.query(Tenant).filter(
        Tenant.is_active == True,
        ~Tenant.id.in_(live),
    ).order_by(Tenant.id).all()


def main(dry_run: bool = False) -> int:
    db = SessionLocal()

    try:
        tenants = find_tenants_without_subscription(db)
        print(f"対象テナント: {len(tenants)}件")

        for i, tenant in enumerate(tenants, start=1):
            if dry_run:
                print(f"[{i}/{len(tenants)}] (dry-run) tenant_id={tenant.id} {tenant.name}")
                continue
            sub = ensure_free_subscription(db, tenant.id)
            print(f"[{i}/{len(tenants)}] ✅ tenant_id={tenant.id} → subscription_id={sub.id}")

        if not dry_run:
            db.commit()
        print(f"\n✅ 完了: {len(tenants)}件{'(dry-run)' if dry_run else ''}")
        return len(tenants)

    except Exception as e:
        db.rollback()
        print(f"\n❌ エラー: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main(dry_run="--dry-run" in sys.argv)

from __future__ import annotations

import argparse
from dataclasses import replace
from decimal import Decimal

from packages.shared.schemas.order_v1 import CustomerV1, DeliveryAddressV1, FulfillmentV1
from services.api.app.db.init_db import init_db
from services.api.app.log import configure_logging
from services.api.app.services.orchestrator import PlacementRequest
from services.api.app.services.orchestrator_factory import build_orchestrator
from services.api.app.services.pricing import CartLine, TipSpec
from services.api.app.settings import RuntimeSettings


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Place a sample order and walk it through the demo lifecycle"
    )
    parser.add_argument("--fulfillment", choices=["pickup", "delivery"], default="delivery")
    parser.add_argument("--pos", default=None, help="toast, square or clover")
    parser.add_argument("--courier", default=None, help="doordash or uber")
    parser.add_argument("--distance-miles", type=Decimal, default=Decimal("1.8"))
    parser.add_argument("--tip-percent", type=Decimal, default=Decimal("18"))
    args = parser.parse_args()

    configure_logging()
    runtime = replace(RuntimeSettings.from_env(), scheduler="manual", demo_progression=True)
    if runtime.order_store == "sql":
        init_db()
    orchestrator = build_orchestrator(runtime)

    fulfillment = FulfillmentV1(args.fulfillment)
    order = orchestrator.place_order(
        PlacementRequest(
            fulfillment=fulfillment,
            customer=CustomerV1(name="Demo Customer", phone="+15555550100"),
            items=(
                CartLine(sku="burger", name="Smash Burger", unit_price_cents=1200, quantity=1),
                CartLine(sku="fries", name="Fries", unit_price_cents=400, quantity=2),
            ),
            delivery_address=DeliveryAddressV1(line1="9 Elm St", city="Naperville", state="IL")
            if fulfillment == FulfillmentV1.DELIVERY
            else None,
            distance_miles=args.distance_miles if fulfillment == FulfillmentV1.DELIVERY else None,
            tip=TipSpec(percent=args.tip_percent),
            pos_provider=args.pos,
            courier_provider=args.courier,
        )
    )

    orchestrator.scheduler.run_all()

    final = orchestrator.get_order(order.id)
    print(f"order={final.id} status={final.status.value} total={final.totals.grand_total_cents}")
    for event in orchestrator.list_events(order.id):
        print(f"  {event.created_at}  {event.event_type.value:<24} {event.source}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

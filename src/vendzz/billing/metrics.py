"""
Billing engine metrics.

Instruments come from the OpenTelemetry API; without a configured SDK meter
provider they are no-ops.
"""

from opentelemetry import metrics
from opentelemetry.metrics import Meter


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None) -> None:
        self.meter = meter or metrics.get_meter("vendzz.billing")

        self.charge_counter = self.meter.create_counter(
            name="billing.charge.count",
            description="Gateway charges by type, gateway and outcome",
        )
        self.charge_amount_histogram = self.meter.create_histogram(
            name="billing.charge.amount",
            description="Charged amounts in minor units",
            unit="1",
        )
        self.sweep_duration_histogram = self.meter.create_histogram(
            name="billing.sweep.duration",
            description="Duration of a billing sweep",
            unit="s",
        )
        self.sweep_subscription_counter = self.meter.create_counter(
            name="billing.sweep.subscriptions",
            description="Subscriptions handled by sweeps, by result",
        )
        self.webhook_counter = self.meter.create_counter(
            name="billing.webhook.events",
            description="Webhook events by gateway, type and handling result",
        )
        self.reconciliation_counter = self.meter.create_counter(
            name="billing.reconciliation.items",
            description="Items queued for operator reconciliation, by reason",
        )

    def record_charge(
        self, charge_type: str, gateway: str, outcome: str, amount_minor_units: int, currency: str
    ) -> None:
        attributes = {"type": charge_type, "gateway": gateway, "outcome": outcome}
        self.charge_counter.add(1, attributes)
        self.charge_amount_histogram.record(
            amount_minor_units, {**attributes, "currency": currency}
        )

    def record_sweep(self, duration_seconds: float, results: dict[str, int]) -> None:
        self.sweep_duration_histogram.record(duration_seconds)
        for result, count in results.items():
            if count:
                self.sweep_subscription_counter.add(count, {"result": result})

    def record_webhook(self, gateway: str, event_type: str, result: str) -> None:
        self.webhook_counter.add(1, {"gateway": gateway, "type": event_type, "result": result})

    def record_reconciliation(self, reason: str) -> None:
        self.reconciliation_counter.add(1, {"reason": reason})


_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the process-wide billing metrics collector."""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics

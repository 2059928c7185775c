from app.models.billing import (  # noqa: F401
    BillingPeriod,
    Customer,
    Payment,
    PaymentStatus,
    Plan,
    ProcessedEvent,
    Product,
    Subscription,
    SubscriptionStatus,
)
from app.models.entitlement import (  # noqa: F401
    Entitlement,
    EntitlementAuditAction,
    EntitlementAuditEntry,
    EntitlementStatus,
    UsageEvent,
)

"""
Notifications — multi-channel delivery engine.

Modules:
    models          Channel, DeliveryRecord, DailyAnalytics, SendResult, ...
    availability    which requested channels are configured
    retry           RetryExecutor + retryability classifier
    channels/       web push, email, WhatsApp, SMS senders and transports
    orchestrator    NotificationService (send_notification, notify_users, notify_by_role)
    analytics       per-day analytics recomputation and reporting
    stores          store protocols + in-memory implementations
    persistence     SQLAlchemy stores
    jobs            background analytics scheduler
    factory         builds the service from settings
"""

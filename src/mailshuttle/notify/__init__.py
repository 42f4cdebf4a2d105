# =============================================================================
# Notify Module
# =============================================================================
# Operator alerts for quarantine events, sent via SMTP.
# =============================================================================

from mailshuttle.notify.client import (
    LogNotifier,
    Notifier,
    NotifyError,
    SMTPNotifier,
    make_notifier,
)

__all__ = [
    "LogNotifier",
    "Notifier",
    "NotifyError",
    "SMTPNotifier",
    "make_notifier",
]

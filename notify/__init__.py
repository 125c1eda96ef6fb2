"""notify/ -- Out-of-band notifications (verification, MFA and reset codes, alerts).

Layer rule: notify/ imports only core/ plus stdlib and third-party libraries.
The sender is constructed once by the API lifespan and injected into the
auth engine; there is no module-level mail client.
"""

from notify.sender import NotificationResult, NotificationSender, SmtpNotificationSender, TemplateKind

__all__ = ["NotificationResult", "NotificationSender", "SmtpNotificationSender", "TemplateKind"]

from .service import EmailError, EmailService, ORDER_UPDATE_STATUSES, email_service

__all__ = ["EmailError", "EmailService", "ORDER_UPDATE_STATUSES", "email_service"]

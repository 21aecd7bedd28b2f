from app.services.auth import AuthService
from app.services.credentials import CredentialService
from app.services.gateway import EventGateway
from app.services.helius import HeliusWebhookClient
from app.services.jobs import JobService
from app.services.reconciler import SubscriptionReconciler

__all__ = [
    "AuthService",
    "CredentialService",
    "EventGateway",
    "HeliusWebhookClient",
    "JobService",
    "SubscriptionReconciler",
]

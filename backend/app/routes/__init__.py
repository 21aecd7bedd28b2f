from app.routes import auth, credentials, jobs, webhooks

__all__ = [
    "auth",
    "credentials",
    "jobs",
    "webhooks",
]

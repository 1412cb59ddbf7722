"""Phone registration and account deployment."""

from phonevault.registration.orchestrator import PublicKey, RegistrationOrchestrator, UserView

__all__ = ["PublicKey", "RegistrationOrchestrator", "UserView"]

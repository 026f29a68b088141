from app.services.credentials.service import (
    CredentialService,
    PassthroughSealer,
    SecretSealer,
    mask_key,
)

__all__ = ["CredentialService", "PassthroughSealer", "SecretSealer", "mask_key"]

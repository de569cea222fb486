import hmac
import logging
import secrets

from backend.config import PROOF_TOKEN_BYTES

logger = logging.getLogger(__name__)


class TokenRotator:
    """
    Owns one session's proof token and swaps it every `rotation_seconds`.

    Only the current token and the one it replaced are ever accepted, so a
    scan decoded just before a rotation still lands while anything older is
    refused.
    """

    def __init__(self, rotation_seconds: int, now: float, *, token_bytes: int = PROOF_TOKEN_BYTES):
        if rotation_seconds <= 0:
            raise ValueError("rotation_seconds must be positive.")
        self.rotation_seconds = rotation_seconds
        self.token_bytes = max(16, token_bytes)
        self.previous_token: str | None = None
        self.current_token = self._generate()
        self.issued_at = now
        self.frozen = False

    def _generate(self) -> str:
        return secrets.token_urlsafe(self.token_bytes)

    def issue(self, now: float) -> str:
        if self.frozen:
            raise RuntimeError("Token rotator is frozen.")
        self.previous_token = self.current_token
        self.current_token = self._generate()
        self.issued_at = now
        return self.current_token

    def tick(self, now: float) -> bool:
        """Rotate when a full interval has elapsed. Returns True on rotation."""
        if self.frozen:
            return False
        if now - self.issued_at < self.rotation_seconds:
            return False
        self.issue(now)
        return True

    def freeze(self) -> None:
        self.frozen = True

    def is_recent_token(self, value: str) -> bool:
        if not isinstance(value, str) or not value:
            return False
        candidate = value.encode("utf-8")
        # Compare against both so timing does not reveal which one matched.
        matched_current = hmac.compare_digest(candidate, self.current_token.encode("utf-8"))
        matched_previous = False
        if self.previous_token is not None:
            matched_previous = hmac.compare_digest(candidate, self.previous_token.encode("utf-8"))
        return matched_current or matched_previous

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import (
    AuthenticationError,
    ConfigurationError,
    IngestError,
    InternalError,
    ValidationError,
)
from .logging_utils import log_json
from .metrics import MetricsRecorder
from .security import verify_signature
from .storage import MessageStore
from .validation import ValidationFailure, validate_payload


logger = logging.getLogger(__name__)

OK_BODY = {"status": "ok"}


@dataclass
class WebhookOutcome:
    status_code: int
    result: str
    body: dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    dup: bool = False


class IngestionPipeline:
    """
    Write path for POST /webhook.

    secret -> signature -> json -> schema -> insert, stopping at the first
    failing step. Every call records exactly one webhook result.
    """

    def __init__(self, store: MessageStore, metrics: MetricsRecorder, secret: Optional[str]) -> None:
        self.store = store
        self.metrics = metrics
        self.secret = secret

    def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        try:
            outcome = self._run(raw_body, signature)
        except IngestError as exc:
            outcome = WebhookOutcome(
                status_code=exc.status_code,
                result=exc.result,
                body={"detail": exc.detail},
            )
        except Exception:
            log_json(logging.ERROR, logger, event="webhook_error", exc_info=True)
            err = InternalError()
            outcome = WebhookOutcome(
                status_code=err.status_code,
                result=err.result,
                body={"detail": err.detail},
            )

        self.metrics.inc_webhook_result(outcome.result)
        return outcome

    def _run(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        if not self.secret:
            raise ConfigurationError()

        if not verify_signature(self.secret, signature, raw_body):
            raise AuthenticationError()

        parsed = validate_payload(raw_body)
        if isinstance(parsed, ValidationFailure):
            raise ValidationError(parsed.to_detail())

        inserted = self.store.insert(parsed)
        return WebhookOutcome(
            status_code=200,
            result="duplicate" if inserted.dup else "created",
            body=dict(OK_BODY),
            message_id=parsed.message_id,
            dup=inserted.dup,
        )

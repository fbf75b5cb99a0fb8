from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.orm import Session

from crm_api.errors import ApiError, IdentityError
from crm_api.identity import Identity, IdentityClient, IdentityServiceError
from crm_api.metrics import observe_registration_outcome
from crm_api.store.errors import store_operation
from crm_api.store.models import IDENTITY_MANAGED_PASSWORD, AppUser


logger = logging.getLogger("crm_api.auth")
tracer = trace.get_tracer("crm_api.auth.saga")


class SagaOutcome(str, enum.Enum):
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"
    PARTIALLY_FAILED = "PartiallyFailed"


@dataclass
class SagaResult:
    outcome: SagaOutcome
    identity: Identity
    user: AppUser | None = None
    error: ApiError | None = None

    @property
    def committed(self) -> bool:
        return self.outcome is SagaOutcome.COMMITTED


class RegistrationSaga:
    """Creates an identity, then the matching ``users`` row.

    The two steps share no transaction. When the row insert fails the
    identity is deleted again; if that delete fails too the orphaned identity
    is logged and the outcome is ``PartiallyFailed``. Identity rejections
    raise ``IdentityError`` before anything is written to the store.
    """

    def __init__(self, db: Session, identity: IdentityClient) -> None:
        self.db = db
        self.identity = identity

    def run(self, *, email: str, password: str, first_name: str, last_name: str, role: str) -> SagaResult:
        with tracer.start_as_current_span("auth.registration_saga") as span:
            try:
                identity = self.identity.sign_up(
                    email,
                    password,
                    {"first_name": first_name, "last_name": last_name, "role": role},
                )
            except IdentityServiceError as exc:
                observe_registration_outcome("identity_rejected")
                logger.info("auth.registration_rejected", extra={"error": exc.message})
                raise IdentityError(exc.message) from exc

            span.set_attribute("identity_id", identity.id)
            try:
                with store_operation(self.db, "users.insert"):
                    user = AppUser(
                        id=uuid.UUID(identity.id),
                        email=identity.email or email,
                        first_name=first_name,
                        last_name=last_name,
                        role=role,
                        password_hash=IDENTITY_MANAGED_PASSWORD,
                    )
                    self.db.add(user)
                    self.db.commit()
            except ApiError as exc:
                outcome = self._compensate(identity)
                span.set_attribute("outcome", outcome.value)
                return SagaResult(outcome=outcome, identity=identity, error=exc)

            self.db.refresh(user)
            observe_registration_outcome(SagaOutcome.COMMITTED.value)
            logger.info(
                "auth.registration_committed",
                extra={"user_id": identity.id, "outcome": SagaOutcome.COMMITTED.value},
            )
            span.set_attribute("outcome", SagaOutcome.COMMITTED.value)
            return SagaResult(outcome=SagaOutcome.COMMITTED, identity=identity, user=user)

    def _compensate(self, identity: Identity) -> SagaOutcome:
        try:
            self.identity.delete_user(identity.id)
        except IdentityServiceError as exc:
            outcome = SagaOutcome.PARTIALLY_FAILED
            logger.error(
                "auth.registration_compensation_failed",
                extra={"user_id": identity.id, "outcome": outcome.value, "error": exc.message},
            )
        else:
            outcome = SagaOutcome.ROLLED_BACK
            logger.warning(
                "auth.registration_rolled_back",
                extra={"user_id": identity.id, "outcome": outcome.value},
            )
        observe_registration_outcome(outcome.value)
        return outcome

from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from crm_api.activity import log_activity
from crm_api.auth.saga import RegistrationSaga
from crm_api.auth.schemas import ApplicationUser
from crm_api.crm.schemas import (
    AssignmentCreate,
    AssignmentRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerName,
    CustomerRead,
    CustomerUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    UserCreate,
    UserName,
    UserRead,
    UserUpdate,
)
from crm_api.errors import IdentityError, InvalidReference, NotFound, RecordInUse, UserCreationFailed
from crm_api.identity import IdentityClient, IdentityServiceError
from crm_api.store.errors import store_operation
from crm_api.store.models import AppUser, Contact, Customer, Deal, UserAssignment


logger = logging.getLogger("crm_api.crm")


def _customer_name(customer: Customer | None) -> CustomerName | None:
    if customer is None:
        return None
    return CustomerName(company_name=customer.company_name)


def _get_or_404(session: Session, model: type, record_id: uuid.UUID, operation: str):
    with store_operation(session, operation):
        row = session.get(model, record_id)
    if row is None:
        raise NotFound()
    return row


def _ensure_exists(session: Session, model: type, record_id: uuid.UUID, operation: str, message: str) -> None:
    with store_operation(session, operation):
        found = session.scalar(select(model.id).where(model.id == record_id))
    if found is None:
        raise InvalidReference(message)


class CustomerService:
    def list_customers(self, session: Session) -> list[CustomerRead]:
        with store_operation(session, "customers.list"):
            rows = session.scalars(select(Customer).order_by(Customer.created_at.desc())).all()
        return [CustomerRead.model_validate(row) for row in rows]

    def create_customer(self, session: Session, actor: ApplicationUser, dto: CustomerCreate) -> CustomerRead:
        with store_operation(session, "customers.create"):
            customer = Customer(**dto.model_dump())
            session.add(customer)
            session.commit()
            session.refresh(customer)
        log_activity(session, actor.id, "create customer")
        return CustomerRead.model_validate(customer)

    def update_customer(
        self, session: Session, actor: ApplicationUser, customer_id: uuid.UUID, dto: CustomerUpdate
    ) -> CustomerRead:
        customer = _get_or_404(session, Customer, customer_id, "customers.get")
        with store_operation(session, "customers.update"):
            for key, value in dto.model_dump().items():
                setattr(customer, key, value)
            session.commit()
            session.refresh(customer)
        log_activity(session, actor.id, "update customer")
        return CustomerRead.model_validate(customer)

    def delete_customer(self, session: Session, actor: ApplicationUser, customer_id: uuid.UUID) -> None:
        customer = _get_or_404(session, Customer, customer_id, "customers.get")
        with store_operation(session, "customers.delete"):
            has_deals = session.scalar(select(Deal.id).where(Deal.customer_id == customer_id).limit(1))
        if has_deals is not None:
            raise RecordInUse("Customer has deals")
        with store_operation(session, "customers.delete"):
            session.execute(update(Contact).where(Contact.customer_id == customer_id).values(customer_id=None))
            session.delete(customer)
            session.commit()
        log_activity(session, actor.id, "delete customer")


class ContactService:
    def list_contacts(self, session: Session) -> list[ContactRead]:
        with store_operation(session, "contacts.list"):
            rows = session.scalars(select(Contact).order_by(Contact.created_at.desc())).unique().all()
        return [self._to_read(row) for row in rows]

    def create_contact(self, session: Session, actor: ApplicationUser, dto: ContactCreate) -> ContactRead:
        if dto.customer_id is not None:
            _ensure_exists(session, Customer, dto.customer_id, "customers.exists", "Invalid customer selected")
        with store_operation(session, "contacts.create"):
            contact = Contact(**dto.model_dump())
            session.add(contact)
            session.commit()
            session.refresh(contact)
        log_activity(session, actor.id, "create contact")
        return self._to_read(contact)

    def update_contact(
        self, session: Session, actor: ApplicationUser, contact_id: uuid.UUID, dto: ContactUpdate
    ) -> ContactRead:
        contact = _get_or_404(session, Contact, contact_id, "contacts.get")
        if dto.customer_id is not None:
            _ensure_exists(session, Customer, dto.customer_id, "customers.exists", "Invalid customer selected")
        with store_operation(session, "contacts.update"):
            for key, value in dto.model_dump().items():
                setattr(contact, key, value)
            session.commit()
            session.refresh(contact)
        log_activity(session, actor.id, "update contact")
        return self._to_read(contact)

    def delete_contact(self, session: Session, actor: ApplicationUser, contact_id: uuid.UUID) -> None:
        contact = _get_or_404(session, Contact, contact_id, "contacts.get")
        with store_operation(session, "contacts.delete"):
            session.delete(contact)
            session.commit()
        log_activity(session, actor.id, "delete contact")

    def _to_read(self, contact: Contact) -> ContactRead:
        return ContactRead(
            id=contact.id,
            first_name=contact.first_name,
            last_name=contact.last_name,
            email=contact.email,
            phone=contact.phone,
            position=contact.position,
            customer_id=contact.customer_id,
            created_at=contact.created_at,
            updated_at=contact.updated_at,
            customers=_customer_name(contact.customer),
        )


class DealService:
    def list_deals(self, session: Session) -> list[DealRead]:
        with store_operation(session, "deals.list"):
            rows = session.scalars(select(Deal).order_by(Deal.created_at.desc())).unique().all()
        return [self.to_read(row) for row in rows]

    def create_deal(self, session: Session, actor: ApplicationUser, dto: DealCreate) -> DealRead:
        _ensure_exists(session, Customer, dto.customer_id, "customers.exists", "Invalid customer selected")
        with store_operation(session, "deals.create"):
            deal = Deal(**dto.model_dump(), created_by=actor.id)
            session.add(deal)
            session.commit()
            session.refresh(deal)
        log_activity(session, actor.id, "create deal")
        return self.to_read(deal)

    def update_deal(self, session: Session, actor: ApplicationUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = _get_or_404(session, Deal, deal_id, "deals.get")
        _ensure_exists(session, Customer, dto.customer_id, "customers.exists", "Invalid customer selected")
        with store_operation(session, "deals.update"):
            for key, value in dto.model_dump().items():
                setattr(deal, key, value)
            session.commit()
            session.refresh(deal)
        log_activity(session, actor.id, "update deal")
        return self.to_read(deal)

    def delete_deal(self, session: Session, actor: ApplicationUser, deal_id: uuid.UUID) -> None:
        deal = _get_or_404(session, Deal, deal_id, "deals.get")
        with store_operation(session, "deals.delete"):
            session.execute(delete(UserAssignment).where(UserAssignment.deal_id == deal_id))
            session.delete(deal)
            session.commit()
        log_activity(session, actor.id, "delete deal")

    def to_read(self, deal: Deal) -> DealRead:
        return DealRead(
            id=deal.id,
            title=deal.title,
            value=float(deal.value),
            status=deal.status,
            customer_id=deal.customer_id,
            expected_close_date=deal.expected_close_date,
            created_by=deal.created_by,
            created_at=deal.created_at,
            updated_at=deal.updated_at,
            customers=_customer_name(deal.customer),
        )


class UserService:
    def list_users(self, session: Session) -> list[UserRead]:
        with store_operation(session, "users.list"):
            rows = session.scalars(select(AppUser).order_by(AppUser.last_name, AppUser.first_name)).all()
        return [UserRead.model_validate(row) for row in rows]

    def create_user(
        self, session: Session, identity: IdentityClient, actor: ApplicationUser, dto: UserCreate
    ) -> UserRead:
        result = RegistrationSaga(session, identity).run(
            email=str(dto.email),
            password=dto.password,
            first_name=dto.first_name,
            last_name=dto.last_name,
            role=dto.role,
        )
        if not result.committed or result.user is None:
            raise UserCreationFailed() from result.error
        log_activity(session, actor.id, "create user")
        return UserRead.model_validate(result.user)

    def update_user(
        self, session: Session, identity: IdentityClient, actor: ApplicationUser, user_id: uuid.UUID, dto: UserUpdate
    ) -> UserRead:
        user = _get_or_404(session, AppUser, user_id, "users.get")
        email = str(dto.email)
        email_changed = email.lower() != user.email.lower()
        with store_operation(session, "users.update"):
            user.email = email
            user.first_name = dto.first_name
            user.last_name = dto.last_name
            user.role = dto.role
            session.flush()
        # The sign-in credentials live with the identity platform.
        if email_changed or dto.password:
            try:
                identity.update_user(
                    str(user_id),
                    email=email if email_changed else None,
                    password=dto.password or None,
                )
            except IdentityServiceError as exc:
                session.rollback()
                logger.warning("crm.identity_update_failed", extra={"user_id": str(user_id), "error": exc.message})
                raise IdentityError(exc.message) from exc
        with store_operation(session, "users.update"):
            session.commit()
            session.refresh(user)
        log_activity(session, actor.id, "update user")
        return UserRead.model_validate(user)

    def delete_user(
        self, session: Session, identity: IdentityClient, actor: ApplicationUser, user_id: uuid.UUID
    ) -> None:
        user = _get_or_404(session, AppUser, user_id, "users.get")
        with store_operation(session, "users.delete"):
            session.execute(delete(UserAssignment).where(UserAssignment.user_id == user_id))
            session.execute(
                update(UserAssignment).where(UserAssignment.assigned_by == user_id).values(assigned_by=None)
            )
            session.execute(update(Deal).where(Deal.created_by == user_id).values(created_by=None))
            session.delete(user)
            session.commit()
        try:
            identity.delete_user(str(user_id))
        except IdentityServiceError as exc:
            logger.warning("crm.identity_delete_failed", extra={"user_id": str(user_id), "error": exc.message})
        log_activity(session, actor.id, "delete user")

    def toggle_status(self, session: Session, actor: ApplicationUser, user_id: uuid.UUID) -> UserRead:
        user = _get_or_404(session, AppUser, user_id, "users.get")
        with store_operation(session, "users.toggle_status"):
            user.is_active = not user.is_active
            session.commit()
            session.refresh(user)
        log_activity(session, actor.id, "activate user" if user.is_active else "deactivate user")
        return UserRead.model_validate(user)


class AssignmentService:
    def __init__(self, deal_service: DealService) -> None:
        self.deal_service = deal_service

    def list_assignments(self, session: Session) -> list[AssignmentRead]:
        with store_operation(session, "assignments.list"):
            rows = session.scalars(
                select(UserAssignment).order_by(UserAssignment.created_at.desc())
            ).unique().all()
        return [self._to_read(row) for row in rows]

    def create_assignment(self, session: Session, actor: ApplicationUser, dto: AssignmentCreate) -> AssignmentRead:
        _ensure_exists(session, AppUser, dto.user_id, "users.exists", "Invalid user selected")
        _ensure_exists(session, Deal, dto.deal_id, "deals.exists", "Invalid deal selected")
        assigned_by = dto.assigned_by or actor.id
        if assigned_by != actor.id:
            _ensure_exists(session, AppUser, assigned_by, "users.exists", "Invalid assigning user")
        with store_operation(session, "assignments.create"):
            assignment = UserAssignment(user_id=dto.user_id, deal_id=dto.deal_id, assigned_by=assigned_by)
            session.add(assignment)
            session.commit()
            session.refresh(assignment)
        log_activity(session, actor.id, "assign deal")
        return self._to_read(assignment)

    def _to_read(self, assignment: UserAssignment) -> AssignmentRead:
        return AssignmentRead(
            id=assignment.id,
            user_id=assignment.user_id,
            deal_id=assignment.deal_id,
            created_at=assignment.created_at,
            deal=self.deal_service.to_read(assignment.deal),
            user=UserName.model_validate(assignment.user),
            assigned_by=UserName.model_validate(assignment.assigner) if assignment.assigner is not None else None,
        )

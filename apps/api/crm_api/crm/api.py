from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from crm_api.auth.resolver import get_current_user, require_roles
from crm_api.auth.schemas import ApplicationUser
from crm_api.core.database import get_db
from crm_api.crm.schemas import (
    AssignmentCreate,
    AssignmentRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from crm_api.crm.service import AssignmentService, ContactService, CustomerService, DealService, UserService
from crm_api.identity import IdentityClient, get_identity_client

customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
contacts_router = APIRouter(prefix="/api/contacts", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
users_router = APIRouter(prefix="/api/users", tags=["crm.users"])
assignments_router = APIRouter(prefix="/api/assignments", tags=["crm.assignments"])

customer_service = CustomerService()
contact_service = ContactService()
deal_service = DealService()
user_service = UserService()
assignment_service = AssignmentService(deal_service)

require_admin = require_roles("admin")
require_assigner = require_roles("admin", "manager")


@customers_router.get("", response_model=list[CustomerRead])
def list_customers(
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> list[CustomerRead]:
    return customer_service.list_customers(db)


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> CustomerRead:
    return customer_service.create_customer(db, user, dto)


@customers_router.put("/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: uuid.UUID,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> CustomerRead:
    return customer_service.update_customer(db, user, customer_id, dto)


@customers_router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> Response:
    customer_service.delete_customer(db, user, customer_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> list[ContactRead]:
    return contact_service.list_contacts(db)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> ContactRead:
    return contact_service.create_contact(db, user, dto)


@contacts_router.put("/{contact_id}", response_model=ContactRead)
def update_contact(
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> ContactRead:
    return contact_service.update_contact(db, user, contact_id, dto)


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> Response:
    contact_service.delete_contact(db, user, contact_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> list[DealRead]:
    return deal_service.list_deals(db)


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> DealRead:
    return deal_service.create_deal(db, user, dto)


@deals_router.put("/{deal_id}", response_model=DealRead)
def update_deal(
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> DealRead:
    return deal_service.update_deal(db, user, deal_id, dto)


@deals_router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> Response:
    deal_service.delete_deal(db, user, deal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.get("", response_model=list[UserRead])
def list_users(
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> list[UserRead]:
    return user_service.list_users(db)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
    user: ApplicationUser = Depends(require_admin),
) -> UserRead:
    return user_service.create_user(db, identity, user, dto)


@users_router.put("/{user_id}", response_model=UserRead)
def update_user(
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
    user: ApplicationUser = Depends(require_admin),
) -> UserRead:
    return user_service.update_user(db, identity, user, user_id, dto)


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
    user: ApplicationUser = Depends(require_admin),
) -> Response:
    user_service.delete_user(db, identity, user, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.patch("/{user_id}/toggle-status", response_model=UserRead)
def toggle_user_status(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(require_admin),
) -> UserRead:
    return user_service.toggle_status(db, user, user_id)


@assignments_router.get("", response_model=list[AssignmentRead])
def list_assignments(
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(get_current_user),
) -> list[AssignmentRead]:
    return assignment_service.list_assignments(db)


@assignments_router.post("", response_model=AssignmentRead, status_code=status.HTTP_201_CREATED)
def create_assignment(
    dto: AssignmentCreate,
    db: Session = Depends(get_db),
    user: ApplicationUser = Depends(require_assigner),
) -> AssignmentRead:
    return assignment_service.create_assignment(db, user, dto)

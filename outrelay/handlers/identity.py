"""Identity provisioning handler.

Makes sure a subject (student, guardian, teacher) has a login account with
the provider and membership in the event's tenant. Re-running for an
account that already exists only re-asserts the membership.
"""

from typing import Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from outrelay.core.errors import TenantScopeError, TransientHandlerError
from outrelay.core.event import EventKind, OutboxEvent
from outrelay.core.handler import Handler, parse_payload
from outrelay.core.logging import get_logger

logger = get_logger("outrelay.handlers.identity")


class AccountExistsError(Exception):
    """Raised by a provider when the login is already registered."""


class Account(BaseModel):
    account_id: str
    login: str
    tenant_id: str
    display_name: str
    role: str
    email: str | None = None
    phone: str | None = None


class IdentityProvider(Protocol):
    async def find_account(self, login: str) -> Account | None: ...

    async def create_account(
        self,
        login: str,
        tenant_id: str,
        display_name: str,
        role: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> Account: ...

    async def grant_access(self, tenant_id: str, account_id: str, role: str) -> None:
        """Upsert tenant membership; a no-op when it already exists."""
        ...


class InMemoryIdentityProvider:
    """Identity provider kept in memory, for development and tests."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.memberships: set[tuple[str, str, str]] = set()
        self.create_calls = 0

    async def find_account(self, login: str) -> Account | None:
        return self.accounts.get(login)

    async def create_account(
        self,
        login: str,
        tenant_id: str,
        display_name: str,
        role: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> Account:
        self.create_calls += 1
        if login in self.accounts:
            raise AccountExistsError(f"Login {login} is already registered")
        account = Account(
            account_id=str(uuid4()),
            login=login,
            tenant_id=tenant_id,
            display_name=display_name,
            role=role,
            email=email,
            phone=phone,
        )
        self.accounts[login] = account
        return account

    async def grant_access(self, tenant_id: str, account_id: str, role: str) -> None:
        self.memberships.add((tenant_id, account_id, role))


class ProvisionPayload(BaseModel):
    subject_id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    role: str = Field(default="student", pattern=r"^[a-z_]+$")
    email: str | None = None
    phone: str | None = None


class IdentityProvisioningHandler(Handler):
    """Ensures an account and tenant membership exist for the payload's subject."""

    kinds = [EventKind.IDENTITY_PROVISION]

    def __init__(
        self,
        provider: IdentityProvider,
        login_domain: str = "accounts.local",
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.provider = provider
        self.login_domain = login_domain

    def login_for(self, event: OutboxEvent, payload: ProvisionPayload) -> str:
        return f"{payload.role}_{payload.subject_id}@{event.tenant_id}.{self.login_domain}".lower()

    async def handle(self, event: OutboxEvent) -> None:
        payload = parse_payload(ProvisionPayload, event)
        login = self.login_for(event, payload)

        account = await self.provider.find_account(login)
        if account is None:
            try:
                account = await self.provider.create_account(
                    login,
                    event.tenant_id,
                    payload.display_name,
                    payload.role,
                    email=payload.email,
                    phone=payload.phone,
                )
                logger.info(
                    f"Created account {login}",
                    extra={"event_id": event.id, "tenant_id": event.tenant_id},
                )
            except AccountExistsError:
                # Lost a race with another worker; adopt the winner's account
                account = await self.provider.find_account(login)
                if account is None:
                    raise TransientHandlerError(
                        f"Account {login} reported as existing but not found"
                    ) from None

        if account.tenant_id != event.tenant_id:
            raise TenantScopeError(
                f"Account {login} belongs to tenant {account.tenant_id}, "
                f"not {event.tenant_id}"
            )

        await self.provider.grant_access(event.tenant_id, account.account_id, payload.role)

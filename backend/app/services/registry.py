"""Contact registry adapter: who the testator named, as of right now.

The registry is owned by the will editor. This service only ever takes
read snapshots: the verification request copies the snapshot onto its
credentials, so later edits never change who a request was sent to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from sqlmodel import Session, select

from app.errors import NotFound
from app.models.testator import PartyRole, Testator, WillParty

_ROLE_PRECEDENCE = [PartyRole.EXECUTOR, PartyRole.BENEFICIARY, PartyRole.TRUSTED_CONTACT]


@dataclass(frozen=True)
class Party:
    party_id: str
    name: str
    email: str
    role: PartyRole
    is_primary: bool = False


@dataclass
class PartySnapshot:
    executors: list[Party] = field(default_factory=list)
    beneficiaries: list[Party] = field(default_factory=list)
    trusted_contacts: list[Party] = field(default_factory=list)

    def all(self) -> list[Party]:
        return [*self.executors, *self.beneficiaries, *self.trusted_contacts]

    def __len__(self) -> int:
        return len(self.all())


class ContactRegistry(Protocol):
    def list_parties(self, db: Session, testator_id: str) -> PartySnapshot: ...


class SqlContactRegistry:
    """Reads ``will_parties`` plus the testator's own trusted-contact reference.

    A person listed under several roles is kept once, in the most
    privileged role (executor, then beneficiary, then trusted contact).
    """

    def list_parties(self, db: Session, testator_id: str) -> PartySnapshot:
        testator = db.get(Testator, testator_id)
        if testator is None:
            raise NotFound(f"Unknown testator {testator_id}")

        rows = db.exec(
            select(WillParty)
            .where(WillParty.testator_id == testator_id)
            .order_by(WillParty.created_at)  # type: ignore[arg-type]
        ).all()

        by_email: dict[str, Party] = {}
        for role in _ROLE_PRECEDENCE:
            for row in rows:
                if row.role != role.value:
                    continue
                key = row.email.strip().lower()
                if not key or key in by_email:
                    continue
                by_email[key] = Party(
                    party_id=row.id,
                    name=row.name.strip(),
                    email=row.email.strip(),
                    role=role,
                    is_primary=row.is_primary,
                )

        if testator.trusted_contact_email:
            key = testator.trusted_contact_email.strip().lower()
            if key and key not in by_email:
                by_email[key] = Party(
                    party_id=f"{testator.id}:trusted_contact",
                    name=testator.trusted_contact_email.strip(),
                    email=testator.trusted_contact_email.strip(),
                    role=PartyRole.TRUSTED_CONTACT,
                )

        snapshot = PartySnapshot()
        for party in by_email.values():
            if party.role is PartyRole.EXECUTOR:
                snapshot.executors.append(party)
            elif party.role is PartyRole.BENEFICIARY:
                snapshot.beneficiaries.append(party)
            else:
                snapshot.trusted_contacts.append(party)
        return snapshot

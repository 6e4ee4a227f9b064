"""Identity resolution over primary/secondary contact clusters.

Every identity starts as its own primary contact. Requests that share an email
or phone number with an existing cluster either fold into it (creating a
secondary when they carry something new) or, when they touch several clusters
at once, merge them under the oldest record. After every request the cluster
is flat again: one primary, every other member linking straight to it.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from contact_store import ContactStore
from db_models import Contact, ContactResponse, LinkPrecedence
from errors import ClusterIntegrityError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINK_DEPTH = 8


@dataclass
class ClusterView:
    primary_contact_id: int
    emails: List[str] = field(default_factory=list)
    phone_numbers: List[str] = field(default_factory=list)
    secondary_contact_ids: List[int] = field(default_factory=list)

    def add(self, contact: Contact):
        if contact.email and contact.email not in self.emails:
            self.emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in self.phone_numbers:
            self.phone_numbers.append(contact.phoneNumber)
        if contact.id != self.primary_contact_id:
            self.secondary_contact_ids.append(contact.id)

    def to_response(self) -> ContactResponse:
        return ContactResponse(
            primaryContactId=self.primary_contact_id,
            emails=list(self.emails),
            phoneNumbers=list(self.phone_numbers),
            secondaryContactIds=list(self.secondary_contact_ids),
        )


def _clean(value: Optional[str]) -> Optional[str]:
    return value if value else None


class IdentityResolver:
    def __init__(self, store: ContactStore, max_link_depth: int = DEFAULT_MAX_LINK_DEPTH):
        self.store = store
        self.max_link_depth = max_link_depth

    def identify(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ClusterView:
        email = _clean(email)
        phone_number = _clean(phone_number)
        if not email and not phone_number:
            raise ValidationError("Either email or phoneNumber must be provided")

        with self.store.transaction():
            return self._identify(email, phone_number)

    def _identify(self, email: Optional[str], phone_number: Optional[str]) -> ClusterView:
        candidates = self.store.find_many(
            emails=[email] if email else [],
            phone_numbers=[phone_number] if phone_number else [],
        )

        if not candidates:
            contact = self.store.create(
                email=email,
                phone_number=phone_number,
                link_precedence=LinkPrecedence.PRIMARY,
            )
            logger.info("Created primary contact %s", contact.id)
            view = ClusterView(primary_contact_id=contact.id)
            view.add(contact)
            return view

        related = self._expand(candidates)
        primary = min(related, key=Contact.seniority)

        view = ClusterView(primary_contact_id=primary.id)
        view.add(primary)
        for contact in related:
            view.add(contact)

        email_known = email is None or email in view.emails
        phone_known = phone_number is None or phone_number in view.phone_numbers
        if not (email_known and phone_known):
            pair_exists = any(
                c.email == email and c.phoneNumber == phone_number for c in related
            )
            if not pair_exists:
                secondary = self.store.create(
                    email=email,
                    phone_number=phone_number,
                    link_precedence=LinkPrecedence.SECONDARY,
                    linked_id=primary.id,
                )
                logger.info("Created secondary contact %s under primary %s", secondary.id, primary.id)
                view.add(secondary)

        self._flatten(primary, related)
        return view

    def _expand(self, candidates: List[Contact]) -> List[Contact]:
        """Fetch the whole connected component the candidates belong to.

        Anchors begin as the candidates and the records they point at; each
        round fetches every anchor and every record linking to one, and the
        ids found become the next round's anchors until nothing new turns up.
        """
        anchors = {c.id for c in candidates}
        anchors.update(c.linkedId for c in candidates if c.linkedId is not None)

        for _ in range(self.max_link_depth):
            related = self.store.find_many(ids=anchors, linked_ids=anchors)
            found = {c.id for c in related}
            found.update(c.linkedId for c in related if c.linkedId is not None)
            if found <= anchors:
                self._check_links(related)
                return sorted(related, key=Contact.seniority)
            anchors |= found

        raise ClusterIntegrityError(
            f"contact links did not settle within {self.max_link_depth} rounds"
        )

    def _check_links(self, related: List[Contact]):
        by_id: Dict[int, Contact] = {c.id: c for c in related}
        for contact in related:
            if contact.is_primary:
                continue
            if contact.linkedId is None:
                logger.warning("Secondary contact %s has no linkedId", contact.id)
                continue
            parent = by_id.get(contact.linkedId)
            if parent is None:
                logger.warning(
                    "Secondary contact %s links to missing contact %s", contact.id, contact.linkedId
                )
            elif not parent.is_primary:
                logger.warning(
                    "Secondary contact %s links to secondary contact %s", contact.id, parent.id
                )

    def _flatten(self, primary: Contact, related: List[Contact]):
        """Make `primary` the only primary and point every other member at it."""
        if not primary.is_primary or primary.linkedId is not None:
            logger.info("Promoting contact %s to primary", primary.id)
            self.store.update(primary.id, linkPrecedence=LinkPrecedence.PRIMARY, linkedId=None)

        for contact in related:
            if contact.id == primary.id:
                continue
            if contact.is_primary:
                logger.info("Merging primary contact %s into %s", contact.id, primary.id)
            elif contact.linkedId == primary.id:
                continue
            else:
                logger.info("Relinking contact %s from %s to %s", contact.id, contact.linkedId, primary.id)
            self.store.update(contact.id, linkPrecedence=LinkPrecedence.SECONDARY, linkedId=primary.id)

"""Persistence for Contact rows.

The resolver only talks to :class:`ContactStore`; :class:`SqliteContactStore`
is the implementation the API wires in per request.
"""
import abc
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional

from db_models import Contact, LinkPrecedence
from errors import StoreError

MUTABLE_FIELDS = ("linkPrecedence", "linkedId")


def utc_timestamp(value: Optional[datetime] = None) -> str:
    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ContactStore(abc.ABC):

    @abc.abstractmethod
    def find_many(
        self,
        *,
        emails: Iterable[str] = (),
        phone_numbers: Iterable[str] = (),
        ids: Iterable[int] = (),
        linked_ids: Iterable[int] = (),
    ) -> List[Contact]:
        """Return live contacts matching any of the filters, oldest first."""

    @abc.abstractmethod
    def get(self, contact_id: int) -> Optional[Contact]:
        ...

    @abc.abstractmethod
    def exists(self, contact_id: int) -> bool:
        """True if the id is taken, soft-deleted rows included."""

    @abc.abstractmethod
    def create(
        self,
        *,
        email: Optional[str],
        phone_number: Optional[str],
        link_precedence: LinkPrecedence,
        linked_id: Optional[int] = None,
        contact_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> Contact:
        ...

    @abc.abstractmethod
    def update(self, contact_id: int, **fields) -> Contact:
        ...

    @contextmanager
    def transaction(self) -> Iterator[None]:
        yield


class SqliteContactStore(ContactStore):
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _execute(self, query: str, params=()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, params)
        except sqlite3.Error as exc:
            raise StoreError(f"contact store query failed: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self.conn.in_transaction:
            yield
            return

        # IMMEDIATE takes the write lock up front so two requests cannot both
        # decide "no match" and insert competing primaries
        self._execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        try:
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"commit failed: {exc}") from exc

    def find_many(self, *, emails=(), phone_numbers=(), ids=(), linked_ids=()) -> List[Contact]:
        clauses = []
        params = []
        for column, values in (
            ("email", emails),
            ("phoneNumber", phone_numbers),
            ("id", ids),
            ("linkedId", linked_ids),
        ):
            values = [v for v in dict.fromkeys(values) if v is not None]
            if values:
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(values)

        if not clauses:
            return []

        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(clauses)})
            ORDER BY createdAt ASC, id ASC
        """
        rows = self._execute(query, params).fetchall()
        return [Contact(**dict(row)) for row in rows]

    def get(self, contact_id: int) -> Optional[Contact]:
        row = self._execute(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        ).fetchone()
        return Contact(**dict(row)) if row else None

    def exists(self, contact_id: int) -> bool:
        row = self._execute("SELECT 1 FROM Contact WHERE id = ?", (contact_id,)).fetchone()
        return row is not None

    def create(
        self,
        *,
        email=None,
        phone_number=None,
        link_precedence=LinkPrecedence.PRIMARY,
        linked_id=None,
        contact_id=None,
        created_at=None,
    ) -> Contact:
        created = utc_timestamp(created_at)
        now = utc_timestamp()
        precedence = LinkPrecedence(link_precedence).value

        if contact_id is not None:
            cursor = self._execute("""
                INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (contact_id, phone_number, email, linked_id, precedence, created, now))
        else:
            cursor = self._execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone_number, email, linked_id, precedence, created, now))

        contact = self.get(cursor.lastrowid if contact_id is None else contact_id)
        if contact is None:
            raise StoreError("inserted contact could not be read back")
        return contact

    def update(self, contact_id: int, **fields) -> Contact:
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            raise StoreError(f"fields {sorted(unknown)} are immutable")
        if not fields:
            raise StoreError("nothing to update")

        if "linkPrecedence" in fields:
            fields["linkPrecedence"] = LinkPrecedence(fields["linkPrecedence"]).value

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = list(fields.values()) + [utc_timestamp(), contact_id]
        cursor = self._execute(f"""
            UPDATE Contact
            SET {assignments}, updatedAt = ?
            WHERE id = ? AND deletedAt IS NULL
        """, params)
        if cursor.rowcount == 0:
            raise StoreError(f"contact {contact_id} does not exist")

        contact = self.get(contact_id)
        if contact is None:
            raise StoreError(f"contact {contact_id} vanished during update")
        return contact

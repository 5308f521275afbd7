"""Address consistency manager.

Owns ``users/{uid}/addresses`` and keeps exactly one default address in
every non-empty set. Every mutation runs as one store transaction for the
user: it reads the current remote set, stages the target write together
with any default demotions or promotions, and commits them all-or-nothing.
Afterwards the full set is re-read rather than patched locally.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import DEFAULT_OPERATION_TIMEOUT
from .document_store import DocumentSnapshot, DocumentStore, Transaction, user_collection
from .errors import AddressNotFoundError, InvalidAddressError, StoreSyncError
from .models import Address, _utc_now, parse_timestamp
from .utils import call_remote, error_message, require_user

log = logging.getLogger(__name__)

ADDRESS_COLLECTION = "addresses"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Form field -> document key
_FIELD_KEYS = {
    "type": "type",
    "is_default": "isDefault",
    "first_name": "firstName",
    "last_name": "lastName",
    "address_line1": "addressLine1",
    "address_line2": "addressLine2",
    "city": "city",
    "state": "state",
    "zip_code": "zipCode",
    "country": "country",
    "phone": "phone",
}


class AddressForm(BaseModel):
    """Address fields as entered by the user."""

    type: Literal["home", "work", "other"] = "home"
    is_default: bool = False
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: str = ""
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "United States"
    phone: str = ""


class AddressUpdate(BaseModel):
    """Partial edit of an address; unset fields keep their value."""

    type: Optional[Literal["home", "work", "other"]] = None
    is_default: Optional[bool] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


def _validation_reason(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
    )


def _to_document_fields(form: Mapping[str, Any]) -> dict[str, Any]:
    return {_FIELD_KEYS[k]: v for k, v in form.items() if k in _FIELD_KEYS}


def sort_addresses(addresses: list[Address]) -> list[Address]:
    """Display order: the default first, then newest first."""
    by_newest = sorted(
        addresses, key=lambda a: parse_timestamp(a.created_at) or _EPOCH, reverse=True
    )
    return sorted(by_newest, key=lambda a: not a.is_default)


def _newest(docs: list[DocumentSnapshot]) -> DocumentSnapshot:
    return max(docs, key=lambda d: parse_timestamp(d.data.get("createdAt")) or _EPOCH)


class AddressManager:
    """Cached address list plus its invariant-preserving mutations."""

    def __init__(self, store: DocumentStore, timeout: float | None = DEFAULT_OPERATION_TIMEOUT):
        self.store = store
        self.timeout = timeout

        self.addresses: list[Address] = []
        self.is_loading = False
        self.error: str | None = None

    def get_address(self, address_id: str) -> Address | None:
        for address in self.addresses:
            if address.id == address_id:
                return address
        return None

    @property
    def default_address(self) -> Address | None:
        for address in self.addresses:
            if address.is_default:
                return address
        return None

    async def load(self, user_id: str) -> bool:
        """Read the user's addresses into the cache, in display order."""
        user_id = require_user(user_id, "load addresses")
        self.is_loading = True
        self.error = None
        try:
            return await self._refresh(user_id)
        finally:
            self.is_loading = False

    async def add(self, user_id: str, data: Mapping[str, Any]) -> bool:
        """
        Create an address.

        The new address becomes the default when asked to, or when the set
        has no default yet (in particular, when it is the first address).

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            InvalidAddressError: If ``data`` fails validation.
        """
        user_id = require_user(user_id, "add address")
        try:
            form = AddressForm.model_validate(dict(data))
        except ValidationError as e:
            raise InvalidAddressError(_validation_reason(e)) from None

        collection = self._collection(user_id)
        doc_id = self.store.new_document_id()

        async def write(txn: Transaction) -> None:
            current = await txn.list(collection)
            now = _utc_now()
            make_default = form.is_default or not any(d.data.get("isDefault") for d in current)
            if make_default:
                for doc in current:
                    if doc.data.get("isDefault"):
                        txn.update(doc.path, {"isDefault": False, "updatedAt": now})
            address = Address(
                id=doc_id,
                created_at=now,
                updated_at=now,
                **form.model_dump(exclude={"is_default"}),
                is_default=make_default,
            )
            txn.set(f"{collection}/{doc_id}", address.to_dict())

        return await self._mutate(user_id, "add address", write, "Failed to add address")

    async def update(self, user_id: str, address_id: str, data: Mapping[str, Any]) -> bool:
        """
        Edit an address.

        Promoting it to default demotes every other address in the same
        commit. Clearing ``is_default`` on the only default is ignored; pick
        another default with ``set_default`` instead.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            AddressNotFoundError: If the address isn't in the cache.
            InvalidAddressError: If the edited address fails validation.
        """
        user_id = require_user(user_id, "update address")
        existing = self.get_address(address_id)
        if existing is None:
            raise AddressNotFoundError(address_id)
        try:
            changes = AddressUpdate.model_validate(dict(data)).model_dump(exclude_unset=True)
            merged = {
                k: getattr(existing, k) for k in AddressForm.model_fields if hasattr(existing, k)
            }
            merged.update({k: v for k, v in changes.items() if v is not None})
            AddressForm.model_validate(merged)
        except ValidationError as e:
            raise InvalidAddressError(_validation_reason(e)) from None

        collection = self._collection(user_id)

        async def write(txn: Transaction) -> None:
            current = await txn.list(collection)
            target = next((d for d in current if d.id == address_id), None)
            if target is None:
                raise AddressNotFoundError(address_id)
            others_default = [d for d in current if d.id != address_id and d.data.get("isDefault")]
            now = _utc_now()

            fields = _to_document_fields({k: v for k, v in changes.items() if v is not None})
            fields["updatedAt"] = now
            if changes.get("is_default"):
                for doc in others_default:
                    txn.update(doc.path, {"isDefault": False, "updatedAt": now})
            elif not others_default:
                # Nothing else is default, so this one must be
                fields["isDefault"] = True
            txn.update(target.path, fields)

        return await self._mutate(user_id, "update address", write, "Failed to update address")

    async def delete(self, user_id: str, address_id: str) -> bool:
        """
        Delete an address.

        If it was the default, the most recently created remaining address
        becomes the default in the same commit.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            AddressNotFoundError: If the address isn't in the cache.
        """
        user_id = require_user(user_id, "delete address")
        if self.get_address(address_id) is None:
            raise AddressNotFoundError(address_id)

        collection = self._collection(user_id)

        async def write(txn: Transaction) -> None:
            current = await txn.list(collection)
            txn.delete(f"{collection}/{address_id}")
            remaining = [d for d in current if d.id != address_id]
            if remaining and not any(d.data.get("isDefault") for d in remaining):
                promoted = _newest(remaining)
                txn.update(promoted.path, {"isDefault": True, "updatedAt": _utc_now()})
                log.info(f"[User: {user_id}] Promoted address {promoted.id} to default")

        return await self._mutate(user_id, "delete address", write, "Failed to delete address")

    async def set_default(self, user_id: str, address_id: str) -> bool:
        """
        Make ``address_id`` the default by rewriting every address's flag in
        one commit.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            AddressNotFoundError: If the address isn't in the cache.
        """
        user_id = require_user(user_id, "set default address")
        if self.get_address(address_id) is None:
            raise AddressNotFoundError(address_id)

        collection = self._collection(user_id)

        async def write(txn: Transaction) -> None:
            current = await txn.list(collection)
            if not any(d.id == address_id for d in current):
                raise AddressNotFoundError(address_id)
            now = _utc_now()
            for doc in current:
                txn.update(doc.path, {"isDefault": doc.id == address_id, "updatedAt": now})

        return await self._mutate(
            user_id, "set default address", write, "Failed to update default address"
        )

    # --- Internals ---

    def _collection(self, user_id: str) -> str:
        return user_collection(user_id, ADDRESS_COLLECTION)

    async def _mutate(
        self,
        user_id: str,
        operation: str,
        write: Callable[[Transaction], Awaitable[None]],
        fallback: str,
    ) -> bool:
        self.is_loading = True
        self.error = None
        try:
            await call_remote(
                self.store.run_transaction(f"users/{user_id}", write), operation, self.timeout
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] {fallback}: {e}")
            self.error = f"{fallback}: {error_message(e, 'unknown error')}"
            # The outcome is uncertain; show whatever the store holds now
            await self._refresh(user_id, keep_error=True)
            self.is_loading = False
            return False

        log.info(f"[User: {user_id}] {operation} committed")
        await self._refresh(user_id)
        self.is_loading = False
        return True

    async def _refresh(self, user_id: str, keep_error: bool = False) -> bool:
        try:
            docs = await call_remote(
                self.store.list(self._collection(user_id)), "load addresses", self.timeout
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Error loading addresses: {e}")
            if not keep_error:
                self.error = f"Failed to load addresses: {error_message(e, 'unknown error')}"
            return False

        self.addresses = sort_addresses([Address.from_dict(d.id, d.data) for d in docs])
        return True

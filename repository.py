"""
repository.py – Facade consumed by the presentation layer.

AuthenticatorRepository keeps the ordered in-memory list of authenticators
and the category list, and turns user intents into store operations:

  - load / add / edit / delete authenticators, HOTP counter increments and
    copy bookkeeping;
  - category management and category assignment;
  - sorting, filtering (category AND text search) and drag reordering.

Listeners registered with subscribe() receive the complete ordered list
after each mutation has finished, through the same dispatcher model as
scheduler.RefreshScheduler, so they never observe a half-applied change.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Union

import otp
from errors import AuthenticatorError, ConcurrencyError, NotFoundError
from models import Authenticator, AuthenticatorCategory, Category, GeneratedCode, SortMode
from scheduler import Dispatcher, run_inline

logger = logging.getLogger("OtpAuthenticator")

Listener = Callable[[List[Authenticator]], None]


@dataclass(frozen=True)
class AuthenticatorRef:
    """A plain click on an authenticator (copies its code)."""

    secret: str


@dataclass(frozen=True)
class ReorderRequest:
    """A drag of *dragged* dropped onto *target* (both secrets)."""

    dragged: str
    target: str


Request = Union[AuthenticatorRef, ReorderRequest]


def _sorted(items: Iterable[Authenticator], mode: SortMode) -> List[Authenticator]:
    if mode in (SortMode.ALPHABETICAL_ASCENDING, SortMode.ALPHABETICAL_DESCENDING):
        return sorted(
            items,
            key=lambda a: (a.issuer.casefold(), a.username.casefold()),
            reverse=mode == SortMode.ALPHABETICAL_DESCENDING,
        )
    if mode == SortMode.COPY_COUNT_DESCENDING:
        return sorted(items, key=lambda a: (-a.copy_count, a.issuer.casefold()))
    return sorted(items, key=lambda a: (a.ranking, a.issuer.casefold()))


def _coerce_sort_mode(mode) -> SortMode:
    try:
        return SortMode(mode)
    except ValueError:
        logger.warning("Unknown sort mode %r; using custom order", mode)
        return SortMode.CUSTOM


def _move(items: list, from_index: int, to_index: int) -> list:
    """Return a copy of *items* with the element at from_index moved to to_index."""
    result = list(items)
    result.insert(to_index, result.pop(from_index))
    return result


class AuthenticatorRepository:
    """
    Ordered, filterable view over the authenticator and category stores.

    Parameters
    ----------
    authenticators : storage.AuthenticatorStore
    categories : storage.CategoryStore
    bindings : storage.AuthenticatorCategoryStore
    dispatcher : callable
        Runs listener notifications (e.g. on the UI thread).
    """

    def __init__(self, authenticators, categories, bindings, dispatcher: Dispatcher = run_inline) -> None:
        self.authenticator_store = authenticators
        self.category_store = categories
        self.binding_store = bindings
        self._dispatch = dispatcher

        self._lock = threading.RLock()
        self._items: List[Authenticator] = []
        self._categories: List[Category] = []
        self.sort_mode = SortMode.CUSTOM

        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; return a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            snapshot = list(self._items)
            listeners = list(self._listeners)

        def deliver() -> None:
            for listener in listeners:
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Authenticator listener raised")

        self._dispatch(deliver)

    # ------------------------------------------------------------------
    # Loading and read access
    # ------------------------------------------------------------------

    def load(self) -> None:
        """(Re)read authenticators and categories from the stores."""
        with self._lock:
            items = self.authenticator_store.get_all()
            self._categories = self.category_store.get_all()
            self._items = _sorted(items, self.sort_mode)
        logger.info("Loaded %d authenticators", len(items))
        self._notify()

    @property
    def authenticators(self) -> List[Authenticator]:
        with self._lock:
            return list(self._items)

    @property
    def categories(self) -> List[Category]:
        """Category list for the filter, with the synthetic "All" entry first."""
        with self._lock:
            return [Category.all()] + list(self._categories)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def find(self, secret: str) -> Authenticator:
        with self._lock:
            for auth in self._items:
                if auth.secret == secret:
                    return auth
        raise NotFoundError("Authenticator is not loaded.")

    def _index_of(self, secret: str) -> int:
        for index, auth in enumerate(self._items):
            if auth.secret == secret:
                return index
        return -1

    def _replace_item(self, updated: Authenticator) -> None:
        index = self._index_of(updated.secret)
        if index >= 0:
            self._items[index] = updated

    def category_by_id(self, category_id: Optional[str]) -> Category:
        """
        Return the category with *category_id*, or "All" when the id is
        None or no longer exists (e.g. a stale persisted preference).
        """
        with self._lock:
            for category in self._categories:
                if category_id is not None and category.id == category_id:
                    return category
        return Category.all()

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    def code_for(self, secret: str, now: Optional[float] = None) -> GeneratedCode:
        return otp.compute_for(self.find(secret), now)

    def codes(self, now: Optional[float] = None) -> Dict[str, GeneratedCode]:
        """Current code of every loaded authenticator, keyed by secret."""
        return {auth.secret: otp.compute_for(auth, now) for auth in self.authenticators}

    # ------------------------------------------------------------------
    # Authenticator mutations
    # ------------------------------------------------------------------

    def add(self, auth: Authenticator) -> Authenticator:
        """
        Persist a new authenticator at the end of the custom order and place
        it in the in-memory list according to the current sort mode.
        """
        with self._lock:
            ranking = max((a.ranking for a in self._items), default=-1) + 1
            created = self.authenticator_store.create(replace(auth, ranking=ranking))
            self._items = _sorted(self._items + [created], self.sort_mode)
        logger.info("Added authenticator for %s", created.issuer)
        self._notify()
        return created

    def add_from_uri(self, uri: str) -> Authenticator:
        return self.add(otp.parse_uri(uri))

    def edit(self, auth: Authenticator) -> Authenticator:
        """
        Save edited fields of an existing authenticator.

        The secret is the identity and cannot change; ranking and copy
        count are kept from the stored record.
        """
        with self._lock:
            current = self.find(auth.secret)
            updated = replace(auth, ranking=current.ranking, copy_count=current.copy_count)
            self.authenticator_store.update(updated)
            self._replace_item(updated)
            self._items = _sorted(self._items, self.sort_mode)
        logger.info("Updated authenticator for %s", updated.issuer)
        self._notify()
        return updated

    def delete(self, auth: Authenticator) -> None:
        """Delete *auth* and its category bindings."""
        with self._lock:
            self.authenticator_store.delete(auth)
            index = self._index_of(auth.secret)
            if index >= 0:
                del self._items[index]
        self._notify()

    def increment_counter(self, secret: str) -> Authenticator:
        """Advance a HOTP counter once and persist it."""
        with self._lock:
            updated = self.authenticator_store.increment_counter(secret)
            self._replace_item(updated)
        logger.info("Incremented counter for %s", updated.issuer)
        self._notify()
        return updated

    def record_copy(self, secret: str, now: Optional[float] = None) -> GeneratedCode:
        """Return the code to copy and count the copy for CopyCountDescending."""
        with self._lock:
            code = self.code_for(secret, now)
            self._replace_item(self.authenticator_store.increment_copy_count(secret))
        self._notify()
        return code

    # ------------------------------------------------------------------
    # Sorting and filtering
    # ------------------------------------------------------------------

    def sort(self, mode) -> List[Authenticator]:
        """
        Reorder the in-memory list by *mode*.  Unknown values fall back to
        the custom (ranking) order.
        """
        mode = _coerce_sort_mode(mode)
        with self._lock:
            self.sort_mode = mode
            self._items = _sorted(self._items, mode)
            result = list(self._items)
        logger.info("Sorted authenticators by %s", mode.value)
        self._notify()
        return result

    def filter(self, search_text: str = "", category: Optional[Category] = None) -> List[Authenticator]:
        """
        Return the visible authenticators, in display order.

        With a real category selected only authenticators bound to it are
        kept; None or "All" keeps every authenticator.  A non-blank
        *search_text* additionally keeps only case-insensitive issuer or
        username matches (both conditions must hold).
        """
        items = self.authenticators

        search = (search_text or "").strip().casefold()
        if search:
            items = [
                a for a in items
                if search in a.issuer.casefold() or search in a.username.casefold()
            ]

        if category is not None and not category.is_all:
            secrets = {b.authenticator_secret for b in self.binding_store.get_all_for_category(category)}
            items = [a for a in items if a.secret in secrets]

        return items

    # ------------------------------------------------------------------
    # Reordering
    # ------------------------------------------------------------------

    def reorder(self, dragged_secret: str, target_secret: str) -> List[Authenticator]:
        """
        Move the dragged authenticator to the target's position.

        The dragged item is removed and re-inserted at the index the target
        occupied, which puts it after the target when dragging down and
        before it when dragging up.  Every item then gets ranking = index
        and the whole list is persisted in one commit (O(n) per reorder;
        fine for tens to hundreds of items).
        """
        with self._lock:
            from_index = self._index_of(dragged_secret)
            to_index = self._index_of(target_secret)
            if from_index < 0 or to_index < 0:
                raise ConcurrencyError("The list changed; reload before reordering.")
            if from_index == to_index:
                return list(self._items)
            return self._persist_order(_move(self._items, from_index, to_index))

    def move(self, secret: str, index: int) -> List[Authenticator]:
        """Move *secret* to position *index* (clamped to the list bounds)."""
        with self._lock:
            from_index = self._index_of(secret)
            if from_index < 0:
                raise ConcurrencyError("The list changed; reload before reordering.")
            to_index = min(max(index, 0), len(self._items) - 1)
            if from_index == to_index:
                return list(self._items)
            return self._persist_order(_move(self._items, from_index, to_index))

    def _persist_order(self, ordered: List[Authenticator]) -> List[Authenticator]:
        renumbered = [replace(auth, ranking=index) for index, auth in enumerate(ordered)]
        try:
            self.authenticator_store.update_many(renumbered)
        except AuthenticatorError as exc:
            logger.exception("Failed to reorder authenticators; reloading")
            self._reload_after_failure()
            if isinstance(exc, NotFoundError):
                raise ConcurrencyError("An authenticator vanished while reordering.") from exc
            raise

        self._items = renumbered
        self.sort_mode = SortMode.CUSTOM
        logger.info("Reordered %d authenticators", len(renumbered))
        self._notify()
        return list(renumbered)

    def _reload_after_failure(self) -> None:
        try:
            self.load()
        except AuthenticatorError:
            logger.exception("Reload after failed reorder also failed")

    def handle(self, request: Request):
        """
        Dispatch a presentation request: a ReorderRequest reorders, an
        AuthenticatorRef copies the code (returning it).
        """
        if isinstance(request, ReorderRequest):
            if request.dragged == request.target:
                return None
            return self.reorder(request.dragged, request.target)
        if isinstance(request, AuthenticatorRef):
            return self.record_copy(request.secret)
        raise TypeError(f"Unsupported request: {request!r}")

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def add_category(self, name: str) -> Category:
        with self._lock:
            ranking = max((c.ranking for c in self._categories), default=-1) + 1
            category = self.category_store.create(Category(id=None, name=name.strip(), ranking=ranking))
            self._categories.append(category)
        return category

    def rename_category(self, category_id: str, name: str) -> Category:
        with self._lock:
            current = self.category_by_id(category_id)
            if current.is_all:
                raise NotFoundError("Category is not loaded.")
            renamed = replace(current, name=name.strip())
            try:
                self.category_store.update(renamed)
            except NotFoundError as exc:
                self._categories = self.category_store.get_all()
                raise ConcurrencyError("The category was deleted meanwhile.") from exc
            self._categories = [renamed if c.id == category_id else c for c in self._categories]
        logger.info("Renamed category %s", renamed.name)
        return renamed

    def delete_category(self, category: Category) -> None:
        """Delete *category* and every binding to it."""
        with self._lock:
            self.category_store.delete(category)
            self._categories = [c for c in self._categories if c.id != category.id]
        self._notify()

    def reorder_categories(self, dragged_id: str, target_id: str) -> List[Category]:
        """Same move-to-target semantics as reorder(), for categories."""
        with self._lock:
            ids = [c.id for c in self._categories]
            if dragged_id not in ids or target_id not in ids:
                raise ConcurrencyError("The category list changed; reload before reordering.")
            ordered = _move(self._categories, ids.index(dragged_id), ids.index(target_id))
            renumbered = [replace(c, ranking=index) for index, c in enumerate(ordered)]
            try:
                with self.category_store.db.transaction():
                    for category in renumbered:
                        self.category_store.update(category)
            except AuthenticatorError:
                logger.exception("Failed to reorder categories; reloading")
                self._categories = self.category_store.get_all()
                raise
            self._categories = renumbered
            return list(renumbered)

    def categories_for(self, auth: Authenticator) -> List[str]:
        """Ids of the categories *auth* is bound to."""
        return [b.category_id for b in self.binding_store.get_all_for_authenticator(auth)]

    def assign_categories(self, auth: Authenticator, category_ids: Iterable[str]) -> None:
        """Replace the category bindings of *auth* in one commit."""
        wanted = list(dict.fromkeys(category_ids))
        with self.binding_store.db.transaction():
            self.binding_store.delete_all_for_authenticator(auth)
            for category_id in wanted:
                self.binding_store.create(AuthenticatorCategory(auth.secret, category_id))
        logger.info("Assigned %d categories to %s", len(wanted), auth.issuer)
        self._notify()

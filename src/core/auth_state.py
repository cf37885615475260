"""Auth-state normalization.

Credential bootstrap routines come in several shapes: an ordered pair
``(state, save)``, an object exposing ``state`` plus a save accessor, or
nothing at all. They are resolved here, once, into a NormalizedAuth so that
nothing downstream branches on shape again.

Every NormalizedAuth guarantees ``state["credentials"]`` and ``state["keys"]``
are mappings, and funnels all writes through ``merge``/``persist`` under one
lock so credential updates are applied in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Optional, Union

from core.awaitables import maybe_await
from core.models import CREDENTIALS_KEY, KEYS_KEY, AuthState
from core.ports import CredentialStorePort

LOGGER = logging.getLogger(__name__)

SaveFn = Callable[[], Union[Awaitable[Any], Any]]
MergeFn = Callable[[Mapping[str, Any]], Union[Awaitable[Any], Any]]
Bootstrap = Callable[[], Any]

_SAVE_ACCESSORS = ("save_state", "save_creds")
_MERGE_ACCESSORS = ("merge",)


def ensure_auth_shape(raw: Any) -> AuthState:
    """Return ``raw`` (mutated in place when possible) with both required keys."""

    state = raw if isinstance(raw, MutableMapping) else {}
    for key in (CREDENTIALS_KEY, KEYS_KEY):
        if not isinstance(state.get(key), Mapping):
            state[key] = {}
    return state


class NormalizedAuth:
    """Canonical auth state plus its persist/merge entry points."""

    def __init__(
        self,
        state: Any,
        save: Optional[SaveFn] = None,
        merge: Optional[MergeFn] = None,
        source: str = "unknown",
    ) -> None:
        self.state = ensure_auth_shape(state)
        self.source = source
        self._save = save
        self._merge = merge
        self._lock = asyncio.Lock()

    async def persist(self) -> None:
        """Write the whole current state through the save function."""

        async with self._lock:
            await self._persist_locked()

    async def merge(self, partial: Mapping[str, Any]) -> None:
        """Shallow-overwrite top-level keys, then persist.

        Calls are serialized, so later partials always win over earlier ones.
        """

        if not isinstance(partial, Mapping):
            LOGGER.warning("Ignoring non-mapping credential update (%s)", type(partial).__name__)
            return

        async with self._lock:
            if self._merge is not None:
                await maybe_await(self._merge(dict(partial)))
                ensure_auth_shape(self.state)
                return
            for key, value in partial.items():
                self.state[key] = value
            ensure_auth_shape(self.state)
            await self._persist_locked()

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current state for read-only consumers."""

        return dict(self.state)

    async def _persist_locked(self) -> None:
        if self._save is None:
            return
        await maybe_await(self._save())


def from_store(store: CredentialStorePort, session_id: str, source: str = "store") -> NormalizedAuth:
    """Build a NormalizedAuth backed directly by a credential store.

    Unreadable or missing state starts fresh; this never raises.
    """

    try:
        loaded = store.load(session_id)
    except Exception as exc:
        LOGGER.warning("Failed to load auth state for %s, starting empty: %s", session_id, exc)
        loaded = None

    state = ensure_auth_shape(loaded if loaded is not None else {})

    def _save() -> None:
        store.save(session_id, state)

    return NormalizedAuth(state, save=_save, source=source)


def store_bootstrap(store: CredentialStorePort, session_id: str) -> Bootstrap:
    """Return a bootstrap that loads from ``store`` and yields ``(state, save)``.

    Store I/O runs in a worker thread so slow backends do not stall the loop.
    Load errors propagate so the caller can demote to its fallback.
    """

    async def _bootstrap() -> tuple[AuthState, SaveFn]:
        loaded = await asyncio.to_thread(store.load, session_id)
        state = ensure_auth_shape(loaded if loaded is not None else {})

        async def _save() -> None:
            await asyncio.to_thread(store.save, session_id, state)

        return state, _save

    return _bootstrap


def _accessor(helper: Any, names: tuple[str, ...]) -> Any:
    for name in names:
        if isinstance(helper, Mapping):
            if name in helper:
                return helper[name]
        elif hasattr(helper, name):
            return getattr(helper, name)
    return None


def _has_state(helper: Any) -> bool:
    if isinstance(helper, Mapping):
        return "state" in helper
    return hasattr(helper, "state")


def normalize_auth(
    result: Any,
    *,
    fallback_store: CredentialStorePort,
    session_id: str,
) -> NormalizedAuth:
    """Resolve a bootstrap result into a NormalizedAuth.

    - ``None`` or an unrecognized shape: file-style fallback via ``fallback_store``
    - ``(state, save)``: wrap ``save``; merge no-ops persistence without it
    - object/mapping with ``state`` and a save accessor: wrap it, preferring its
      own ``merge`` when present
    """

    if result is None:
        LOGGER.info("No bootstrap result for %s; using fallback store", session_id)
        return from_store(fallback_store, session_id, source="fallback")

    if isinstance(result, (tuple, list)):
        if len(result) != 2 or not (result[0] is None or isinstance(result[0], MutableMapping)):
            LOGGER.warning("Malformed bootstrap pair for %s; using fallback store", session_id)
            return from_store(fallback_store, session_id, source="fallback")
        state_raw, save = result
        state = ensure_auth_shape(state_raw if state_raw is not None else {})
        return NormalizedAuth(state, save=save if callable(save) else None, source="pair")

    save = _accessor(result, _SAVE_ACCESSORS)
    if _has_state(result) and save is not None:
        state_raw = result["state"] if isinstance(result, Mapping) else getattr(result, "state")
        if state_raw is None:
            state_raw = {}
        if isinstance(state_raw, MutableMapping):
            merge = _accessor(result, _MERGE_ACCESSORS)
            return NormalizedAuth(
                state_raw,
                save=save if callable(save) else None,
                merge=merge if callable(merge) else None,
                source="object",
            )

    LOGGER.warning("Unrecognized bootstrap shape for %s; using fallback store", session_id)
    return from_store(fallback_store, session_id, source="fallback")


async def bootstrap_auth(
    bootstrap: Optional[Bootstrap],
    *,
    fallback_store: CredentialStorePort,
    session_id: str,
) -> NormalizedAuth:
    """Run ``bootstrap`` (sync or async) and normalize what it produced.

    A failing bootstrap is demoted to the fallback branch and never raises.
    """

    result = None
    if bootstrap is not None:
        try:
            result = await maybe_await(bootstrap())
        except Exception as exc:
            LOGGER.warning("Credential bootstrap failed for %s: %s", session_id, exc)
            result = None
    return normalize_auth(result, fallback_store=fallback_store, session_id=session_id)

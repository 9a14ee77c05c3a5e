"""
Content Lifecycle

State machine for the logical content ids of one store:

    ABSENT -> RESOLVING -> MATERIALIZING -> ACTIVE -> PUBLISHING -> ACTIVE | DESTROYED

Every id is looked up in three tiers, always in this order:
1. ActiveHandleCache (bundles currently joined to the swarm)
2. LocalIndex (seed namespace first, then load namespace)
3. The network (pointer resolution and swarm join)

Only entries reached through the seed namespace are self-authored.
Everything else is verified against its pointer record or content hash
before it is trusted.

Byte-level mutations never touch a live directory. The entry is copied
into a staging directory, mutated there, re-hashed, signed, seeded and
committed with one retire+commit transaction on the index; only then is
the old directory removed and the new record put on the network. Any
failure before the commit discards the staging directory and leaves the
previous state untouched, on disk and on the network.
"""

import asyncio
import logging
import secrets
import shutil
from collections import defaultdict
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from btpk.backends.blob_sink import BlobSink, FileBlobSink, Payload, safe_relative
from btpk.backends.local_index import (
    LOAD,
    NAMESPACES,
    SEED,
    ActiveHandle,
    ActiveHandleCache,
    IndexKey,
    LocalIndex,
)
from btpk.config import StoreConfig
from btpk.core.content_addressing import ContentAddressingEngine, DescriptorOptions
from btpk.core.errors import (
    EmptyContent,
    Conflict,
    IntegrityError,
    InvalidArgument,
    NotFound,
    PointerStoreError,
    SignatureMismatch,
    TimedOut,
)
from btpk.core.identity import Identity, derive_identity, identity_from_secret, load_or_create_root_seed
from btpk.core.record_codec import PointerRecord, encode_value
from btpk.core.refs import (
    KIND_ADDRESS,
    KIND_MESSAGE,
    ByAddress,
    ByInfohash,
    ByMessage,
    ByTitle,
    ContentRef,
    ref_kind,
)
from btpk.core.states import ContentState
from btpk.core.timeouts import with_timeout
from btpk.p2p.dht.kademlia import immutable_target
from btpk.p2p.pointer import MessageRecord, PointerProtocol
from btpk.p2p.swarm import Swarm, SwarmFile

logger = logging.getLogger(__name__)


Apply = Callable[[Path], Awaitable[List[str]]]


@dataclass
class ContentResult:
    """Outcome of a publish, shred, echo or unEcho."""

    id: str
    kind: str
    infohash: str
    own: bool
    active: Optional[ActiveHandle] = None
    record: Optional[PointerRecord] = None
    message: Optional[MessageRecord] = None
    identity: Optional[Identity] = None
    paths: List[str] = field(default_factory=list)
    echo: Optional[str] = None

    @property
    def sequence(self) -> Optional[int]:
        return self.record.sequence if self.record else None

    @property
    def link(self) -> Optional[str]:
        return self.record.link if self.record else None


@dataclass
class _Staged:
    dir_name: str
    folder: Path
    paths: List[str] = field(default_factory=list)


def select_path(active: ActiveHandle, path: Optional[str]) -> Union[ActiveHandle, SwarmFile, List[SwarmFile]]:
    """
    Pick what a load returns for a path.

    "/" returns the whole handle, a path whose last segment has an
    extension returns that single file, and any other path returns every
    file whose url path contains it.

    Raises:
        NotFound: nothing in the bundle matches
    """
    rel = safe_relative(path or "/")
    if not rel:
        return active

    url_path = "/" + rel
    if "." in PurePosixPath(rel).name:
        for swarm_file in active.files:
            if swarm_file.url_path == url_path:
                return swarm_file
        raise NotFound(f"{url_path} is not in {active.logical_id[:16]}...")

    matches = [swarm_file for swarm_file in active.files if url_path in swarm_file.url_path]
    if not matches:
        raise NotFound(f"nothing under {url_path} in {active.logical_id[:16]}...")
    return matches


def _check_stuff(stuff: Optional[Dict[str, str]]) -> None:
    if stuff is None:
        return
    if not isinstance(stuff, dict):
        raise InvalidArgument("stuff must be a mapping of strings")
    for name, value in stuff.items():
        if not isinstance(name, str) or not isinstance(value, str):
            raise InvalidArgument(f"stuff field {name!r} must map a string to a string")
        if name == "ih":
            raise InvalidArgument("stuff may not override ih")


class ContentLifecycle:
    """
    Load, publish, shred and echo logical content ids.

    One instance owns its cache, index, swarm endpoint and root seed;
    several instances can share a process (and a SwarmNetwork) freely.
    """

    def __init__(
        self,
        config: StoreConfig,
        swarm: Swarm,
        index: Optional[LocalIndex] = None,
        blob_sink: Optional[BlobSink] = None,
        root_seed: Optional[bytes] = None,
        pointer: Optional[PointerProtocol] = None,
        engine: Optional[ContentAddressingEngine] = None
    ):
        """
        Initialize content lifecycle.

        Args:
            config: Store configuration
            swarm: Swarm collaborator
            index: Durable index (created under config.folder when omitted)
            blob_sink: Payload writer (filesystem sink when omitted)
            root_seed: Identity root seed (loaded or created from config.seed_path when omitted)
            pointer: Pointer protocol (built on swarm when omitted)
            engine: Content hashing engine
        """
        self.config = config
        self.swarm = swarm

        self.config.storage_dir.mkdir(parents=True, exist_ok=True)
        self.index = index or LocalIndex(config.index_path)
        self.blob_sink = blob_sink or FileBlobSink()
        self.root_seed = root_seed or load_or_create_root_seed(config.seed_path)
        self.pointer = pointer or PointerProtocol(swarm)
        self.engine = engine or ContentAddressingEngine()
        self.cache = ActiveHandleCache()

        self._staging: Set[str] = set()
        self._waiters: Dict[str, int] = defaultdict(int)
        self._abandoned: Set[asyncio.Future] = set()

        logger.info(f"Content lifecycle ready at {self.config.folder}")

    # Public operations

    async def load(
        self,
        ref: ContentRef,
        path: str = "/",
        timeout: Optional[float] = None
    ) -> Union[ActiveHandle, SwarmFile, List[SwarmFile]]:
        """
        Materialize a logical id and return the requested part of it.

        Concurrent loads of one id share a single join. A load that runs
        out of time raises TimedOut and leaves nothing in the cache. When
        the last caller waiting on a join gives up, the join is cancelled
        and cleans up after itself before TimedOut is raised.

        Args:
            ref: Content reference of an existing id
            path: "/" for the handle, a file path, or a directory prefix
            timeout: Budget in seconds (config.timeout when omitted)

        Raises:
            NotFound, IntegrityError, SignatureMismatch, Conflict, TimedOut
        """
        kind = ref_kind(ref)
        logical_id = self._require_id(ref)

        self._waiters[logical_id] += 1
        try:
            active = await with_timeout(
                self.cache.coalesce(logical_id, partial(self._claimed_load, kind, logical_id)),
                self._budget(timeout),
                on_timeout=partial(self._abandon, logical_id),
                label=f"loading {logical_id}"
            )
        finally:
            self._waiters[logical_id] -= 1
            if self._waiters[logical_id] <= 0:
                del self._waiters[logical_id]

        return select_path(active, path)

    async def publish(
        self,
        ref: ContentRef,
        path: str,
        payload: Payload,
        timeout: Optional[float] = None,
        descriptor: Optional[DescriptorOptions] = None,
        stuff: Optional[Dict[str, str]] = None,
        sequence: Optional[int] = None
    ) -> ContentResult:
        """
        Write payload into an entry (a new one when the ref carries no id).

        The content hash is recomputed over the whole directory after the
        write; identity-addressed ids then get a new pointer record at the
        previous sequence + 1, even when the bytes did not change. The
        record is put on the network only after the entry is committed; if
        that put fails its error is raised, the entry stays committed and
        keep-alive repeats the put.

        Args:
            ref: Target entry; ByInfohash()/ByAddress()/ByMessage() create one
            path: File path for a single payload, directory for NamedBlobs
            payload: Bytes, text, a byte iterator or a list of NamedBlob
            timeout: Budget in seconds
            descriptor: Swarm descriptor options (kept from the entry when omitted)
            stuff: Extra string fields for the record (kept when omitted)
            sequence: Explicit sequence, never below previous + 1

        Returns:
            ContentResult of the committed entry
        """
        kind = ref_kind(ref)
        _check_stuff(stuff)
        if sequence is not None and kind != KIND_ADDRESS:
            raise InvalidArgument("only identity-addressed content has a sequence")

        writer = partial(self.blob_sink.write, path=path, payload=payload)
        logical_id = self._logical_id(ref)

        if logical_id is None:
            operation = self._create(ref, kind, writer, descriptor, stuff, sequence)
            label = "publishing new content"
        else:
            operation = self._update(ref, kind, logical_id, writer, descriptor, stuff, sequence)
            label = f"publishing {logical_id}"

        return await with_timeout(operation, self._budget(timeout), label=label)

    async def shred(self, ref: ContentRef, path: str = "/", timeout: Optional[float] = None) -> Optional[ContentResult]:
        """
        Remove an entry ("/") or one item of it.

        Removing the last item deletes the whole entry and raises
        EmptyContent. A subpath of foreign content is removed from an
        echo of it, since the foreign key cannot sign a new record.

        Returns:
            None for a full shred, else the ContentResult of the new state
        """
        kind = ref_kind(ref)
        logical_id = self._require_id(ref)
        return await with_timeout(
            self._shred(ref, kind, logical_id, path),
            self._budget(timeout),
            label=f"shredding {logical_id}"
        )

    async def echo(self, ref: ContentRef, timeout: Optional[float] = None) -> ContentResult:
        """
        Re-home an entry under a fresh anonymous identity.

        The bytes are copied to a new directory, published at sequence 0
        under the new identity, the original entry is retired and the new
        entry remembers it for un_echo. Non-local ids are loaded first.
        """
        kind = ref_kind(ref)
        logical_id = self._require_id(ref)
        return await with_timeout(
            self._echo(kind, logical_id),
            self._budget(timeout),
            label=f"echoing {logical_id}"
        )

    async def un_echo(
        self,
        ref: ContentRef,
        identity: Optional[Identity] = None,
        timeout: Optional[float] = None
    ) -> ContentResult:
        """
        Move an echo back under the id it was echoed from.

        Title-derived identities are re-derived; an original address held
        only by secret needs the caller's identity.

        Raises:
            NotFound: the id is not an echo held by this store
        """
        if ref_kind(ref) != KIND_ADDRESS:
            raise InvalidArgument("echoes are addressed by their anonymous address")
        logical_id = self._require_id(ref)
        return await with_timeout(
            self._un_echo(logical_id, identity),
            self._budget(timeout),
            label=f"un-echoing {logical_id}"
        )

    async def stop(self, ref: ContentRef) -> bool:
        """Leave the swarm for an id without touching durable state."""
        logical_id = self._require_id(ref)
        async with self.cache.claim(logical_id):
            stopped = await self._release(logical_id)
            self.cache.set_state(logical_id, ContentState.ABSENT)
        return stopped

    def state_of(self, logical_id: str) -> ContentState:
        return self.cache.state_of(logical_id)

    def list_authored(self) -> List[str]:
        """Ids this store signs for (seed namespace)."""
        return [logical_id for _, logical_id, _ in self.index.scan_namespace(SEED)]

    def list_content(self, detailed: bool = False) -> Union[Dict[str, List[str]], List[Dict[str, Any]]]:
        """
        Every indexed entry.

        Args:
            detailed: Return one dict per entry instead of ids per namespace
        """
        if not detailed:
            return {
                namespace: [logical_id for _, logical_id, _ in self.index.scan_namespace(namespace)]
                for namespace in NAMESPACES
            }

        listing = []
        for namespace in NAMESPACES:
            for kind, logical_id, value in self.index.scan_namespace(namespace):
                record = value.get("record")
                listing.append({
                    "id": logical_id,
                    "kind": kind,
                    "namespace": namespace,
                    "infohash": value.get("infohash"),
                    "sequence": record["sequence"] if record else None,
                    "owner": value.get("owner"),
                    "echo": value.get("echo"),
                    "active": self.cache.get(logical_id) is not None,
                })
        return listing

    def reconcile_storage(self) -> List[str]:
        """
        Delete storage directories no index entry references.

        Returns:
            Names of the removed directories
        """
        referenced = set(self._staging)
        for namespace in NAMESPACES:
            for _, _, value in self.index.scan_namespace(namespace):
                referenced.add(value.get("dir"))

        removed = []
        for child in sorted(self.config.storage_dir.iterdir()):
            if child.is_dir() and child.name not in referenced:
                shutil.rmtree(child, ignore_errors=True)
                removed.append(child.name)

        if removed:
            logger.info(f"Removed {len(removed)} orphaned storage directories")
        return removed

    async def close(self):
        """Leave every joined bundle and cancel in-flight loads."""
        pending = self.cache.cancel_pending()
        await asyncio.gather(*pending, return_exceptions=True)
        for active in self.cache.active_handles():
            await self._release(active.logical_id)
        logger.info(f"Content lifecycle closed ({len(pending)} loads cancelled)")

    # Loading

    async def _claimed_load(self, kind: str, logical_id: str) -> ActiveHandle:
        async with self.cache.claim(logical_id):
            try:
                active = await self._materialize(kind, logical_id)
            except Exception:
                if self.cache.get(logical_id) is None:
                    self.cache.set_state(logical_id, ContentState.ABSENT)
                raise

            if asyncio.current_task() in self._abandoned:
                # Finished after its last caller timed out, before the cancel landed
                await self._release(logical_id)
                self.cache.set_state(logical_id, ContentState.ABSENT)
                raise TimedOut(f"load of {logical_id[:16]}... finished after its callers timed out")

            return active

    async def _abandon(self, logical_id: str):
        """Roll back a timed-out load once no other caller is waiting for it."""
        if self._waiters.get(logical_id, 0) > 1:
            logger.warning(f"A load of {logical_id[:16]}... timed out, others are still waiting")
            return

        task = self.cache.detach(logical_id)
        if task is not None:
            self._abandoned.add(task)
            try:
                await asyncio.gather(task, return_exceptions=True)
            finally:
                self._abandoned.discard(task)

        if self.cache.get(logical_id) is None:
            self.cache.set_state(logical_id, ContentState.ABSENT)
        logger.warning(f"Load of {logical_id[:16]}... abandoned after timeout")

    async def _materialize(self, kind: str, logical_id: str) -> ActiveHandle:
        """Three-tier lookup; callers hold the claim for logical_id."""
        active = self.cache.get(logical_id)
        if active is not None:
            return active

        namespace, entry = self._find_entry(kind, logical_id)
        if namespace == SEED:
            active = await self._resume_own(kind, logical_id, entry)
        else:
            active = await self._join_foreign(kind, logical_id, entry)

        self.cache.put(active)
        logger.info(f"✅ {logical_id[:16]}... active ({'own' if active.own else 'foreign'})")
        return active

    async def _resume_own(self, kind: str, logical_id: str, entry: Dict[str, Any]) -> ActiveHandle:
        folder = self._folder(entry["dir"])
        options = DescriptorOptions.from_dict(entry.get("options"))

        record = None
        if kind == KIND_ADDRESS:
            record = PointerRecord.from_dict(entry["record"])
            if not record.verify() or record.infohash != entry["infohash"]:
                raise SignatureMismatch(f"stored record for {logical_id[:16]}... does not verify")
        elif kind == KIND_MESSAGE:
            value = encode_value({"ih": entry["infohash"], **(entry.get("stuff") or {})})
            if immutable_target(value) != logical_id:
                raise IntegrityError(f"stored message {logical_id[:16]}... does not match its hash")

        self.cache.set_state(logical_id, ContentState.MATERIALIZING)
        handle = await self.swarm.seed(folder, options)
        if handle.infohash != entry["infohash"]:
            await self.swarm.leave(handle)
            raise Conflict(
                f"{logical_id[:16]}... resumed as {handle.infohash[:16]}..., "
                f"indexed as {entry['infohash'][:16]}..."
            )

        return ActiveHandle(logical_id, kind, True, folder, handle, record)

    async def _join_foreign(self, kind: str, logical_id: str, entry: Optional[Dict[str, Any]]) -> ActiveHandle:
        record = None
        stuff = (entry or {}).get("stuff") or {}

        if kind == KIND_ADDRESS:
            self.cache.set_state(logical_id, ContentState.RESOLVING)
            record = await self._resolve_foreign(logical_id, entry)
            expected = record.infohash
        elif kind == KIND_MESSAGE and entry is None:
            self.cache.set_state(logical_id, ContentState.RESOLVING)
            message = await self.pointer.resolve_message(logical_id)
            expected, stuff = message.infohash, message.stuff
        elif kind == KIND_MESSAGE:
            expected = entry["infohash"]
        else:
            expected = logical_id

        options = DescriptorOptions.from_dict((entry or {}).get("options"))
        reuse = entry is not None and entry["infohash"] == expected
        dir_name = entry["dir"] if reuse else self._new_dir_name()
        folder = self._folder(dir_name)

        self.cache.set_state(logical_id, ContentState.MATERIALIZING)
        self._staging.add(dir_name)
        handle = None
        committed = False
        try:
            folder.mkdir(parents=True, exist_ok=True)
            handle = await self.swarm.join_by_hash(expected, folder, options)
            if handle.infohash != expected:
                raise IntegrityError(
                    f"{logical_id[:16]}... materialized as {handle.infohash[:16]}..., "
                    f"expected {expected[:16]}..."
                )

            value = self._entry_value(dir_name, options, expected, record=record, stuff=stuff)
            if value != entry:
                self.index.put(LOAD, kind, logical_id, value)
            committed = True
        finally:
            self._staging.discard(dir_name)
            if not committed:
                if handle is not None:
                    await self.swarm.leave(handle)
                if not reuse:
                    shutil.rmtree(folder, ignore_errors=True)

        if entry is not None and not reuse:
            shutil.rmtree(self._folder(entry["dir"]), ignore_errors=True)

        return ActiveHandle(logical_id, kind, False, folder, handle, record)

    async def _resolve_foreign(self, address: str, entry: Optional[Dict[str, Any]]) -> PointerRecord:
        try:
            return await self.pointer.resolve(address)
        except PointerStoreError as e:
            if not e.retryable or not entry or not entry.get("record"):
                raise
            cached = PointerRecord.from_dict(entry["record"])
            if not cached.verify():
                raise SignatureMismatch(f"cached record for {address[:16]}... does not verify")
            logger.warning(f"Could not resolve {address[:16]}... ({e}), using cached record seq={cached.sequence}")
            return cached

    # Mutations

    async def _create(self, ref, kind, writer: Apply, descriptor, stuff, sequence) -> ContentResult:
        options = descriptor or DescriptorOptions()
        identity = self._identity_for(ref, None) if kind == KIND_ADDRESS else None
        next_sequence = self._next_sequence(None, sequence)
        staged = await self._stage(None, writer)

        if identity is None:
            return await self._finish(staged, kind=kind, options=options, stuff=stuff)

        async with self.cache.claim(identity.address):
            return await self._finish(
                staged,
                kind=kind,
                options=options,
                identity=identity,
                stuff=stuff,
                sequence=next_sequence
            )

    async def _update(self, ref, kind, logical_id, writer: Apply, descriptor, stuff, sequence) -> ContentResult:
        async with self.cache.claim(logical_id):
            self.cache.set_state(logical_id, ContentState.PUBLISHING)
            try:
                return await self._mutate(ref, kind, logical_id, writer, descriptor, stuff, sequence)
            finally:
                self._settle(logical_id)

    async def _mutate(self, ref, kind, logical_id, apply: Apply, descriptor, stuff, sequence) -> ContentResult:
        namespace, entry = self._find_entry(kind, logical_id)

        if entry is None and kind == KIND_ADDRESS:
            identity = self._identity_for(ref, None)
            if identity is None:
                raise InvalidArgument(f"a secret is needed to publish to {logical_id[:16]}...")
            next_sequence = self._next_sequence(None, sequence)
            staged = await self._stage(None, apply)
            return await self._finish(
                staged,
                kind=kind,
                options=descriptor or DescriptorOptions(),
                identity=identity,
                stuff=stuff,
                sequence=next_sequence
            )

        if entry is None:
            await self._materialize(kind, logical_id)
            namespace, entry = self._find_entry(kind, logical_id)

        options = descriptor or DescriptorOptions.from_dict(entry.get("options"))
        identity = None
        previous = None
        if kind == KIND_ADDRESS:
            identity = self._identity_for(ref, entry)
            if identity is None:
                raise InvalidArgument(f"a secret is needed to publish to {logical_id[:16]}...")
            if entry.get("record"):
                previous = PointerRecord.from_dict(entry["record"])

        if stuff is None:
            stuff = previous.stuff if previous else (entry.get("stuff") or {})
        next_sequence = self._next_sequence(previous.sequence if previous else None, sequence)

        staged = await self._stage(self._folder(entry["dir"]), apply)
        return await self._finish(
            staged,
            kind=kind,
            options=options,
            identity=identity,
            stuff=stuff,
            sequence=next_sequence,
            retire=(namespace, kind, logical_id),
            old_dir=entry["dir"],
            old_id=logical_id,
            extra=self._kept_echo_fields(entry)
        )

    async def _shred(self, ref, kind, logical_id, path) -> Optional[ContentResult]:
        rel = safe_relative(path)
        async with self.cache.claim(logical_id):
            self.cache.set_state(logical_id, ContentState.PUBLISHING)
            destroyed = False
            try:
                namespace, entry = self._find_entry(kind, logical_id)

                if not rel:
                    if entry is None and self.cache.get(logical_id) is None:
                        raise NotFound(f"{logical_id[:16]}... is not held by this store")
                    await self._destroy(kind, logical_id)
                    destroyed = True
                    return None

                if entry is None:
                    await self._materialize(kind, logical_id)
                    namespace, entry = self._find_entry(kind, logical_id)

                remover = partial(self._remove_item, rel)
                try:
                    foreign = namespace == LOAD and (
                        kind != KIND_ADDRESS or self._identity_for(ref, entry) is None
                    )
                    if foreign:
                        return await self._rehome(namespace, kind, logical_id, entry, remover)
                    return await self._mutate(ref, kind, logical_id, remover, None, None, None)
                except EmptyContent:
                    logger.warning(f"Removing {rel} would empty {logical_id[:16]}..., deleting the entry")
                    await self._destroy(kind, logical_id)
                    destroyed = True
                    raise
            finally:
                if not destroyed:
                    self._settle(logical_id)

    async def _echo(self, kind: str, logical_id: str) -> ContentResult:
        async with self.cache.claim(logical_id):
            try:
                namespace, entry = self._find_entry(kind, logical_id)
                if entry is None:
                    await self._materialize(kind, logical_id)
                    namespace, entry = self._find_entry(kind, logical_id)

                return await self._rehome(namespace, kind, logical_id, entry, None)
            finally:
                self._settle(logical_id)

    async def _un_echo(self, logical_id: str, identity: Optional[Identity]) -> ContentResult:
        async with self.cache.claim(logical_id):
            entry = self.index.get(SEED, KIND_ADDRESS, logical_id)
            if entry is None or not entry.get("echo"):
                raise NotFound(f"did not find the echo {logical_id[:16]}...")

            original_id = entry["echo"]
            original_kind = entry["echo_kind"]
            original_namespace = entry.get("echo_namespace") or SEED
            options = DescriptorOptions.from_dict(entry.get("echo_options"))
            stuff = entry.get("echo_stuff") or {}

            signer = None
            record = None
            if original_kind == KIND_ADDRESS:
                signer = identity
                if signer is None and entry.get("echo_title"):
                    signer = self._derive(entry["echo_title"])
                if signer is not None and signer.address != original_id:
                    raise InvalidArgument(f"identity does not match {original_id[:16]}...")
                if signer is None:
                    if original_namespace != LOAD or not entry.get("echo_record"):
                        raise InvalidArgument(f"an identity is needed to republish {original_id[:16]}...")
                    record = PointerRecord.from_dict(entry["echo_record"])
                    if not record.verify():
                        raise SignatureMismatch(f"echoed record for {original_id[:16]}... does not verify")

            async with self.cache.claim(original_id):
                staged = await self._stage(self._folder(entry["dir"]), None)
                common = dict(
                    options=options,
                    stuff=stuff,
                    retire=(SEED, KIND_ADDRESS, logical_id),
                    old_dir=entry["dir"],
                    old_id=logical_id
                )

                if signer is not None:
                    previous = entry.get("echo_sequence")
                    result = await self._finish(
                        staged,
                        kind=KIND_ADDRESS,
                        identity=signer,
                        sequence=self._next_sequence(previous, None),
                        **common
                    )
                else:
                    result = await self._finish(
                        staged,
                        kind=original_kind,
                        record=record,
                        namespace=original_namespace,
                        **common
                    )

            self.cache.set_state(logical_id, ContentState.DESTROYED)
            logger.info(f"Un-echoed {logical_id[:16]}... back to {result.id[:16]}...")
            return result

    async def _rehome(self, namespace, kind, logical_id, entry, apply: Optional[Apply]) -> ContentResult:
        """Publish (a mutated copy of) an entry under a fresh anonymous identity."""
        identity = self._derive(None)
        staged = await self._stage(self._folder(entry["dir"]), apply)
        result = await self._finish(
            staged,
            kind=KIND_ADDRESS,
            options=DescriptorOptions.from_dict(entry.get("options")),
            identity=identity,
            stuff={},
            sequence=0,
            retire=(namespace, kind, logical_id),
            old_dir=entry["dir"],
            old_id=logical_id,
            extra=self._echo_fields(namespace, kind, logical_id, entry)
        )
        logger.info(f"Echoed {logical_id[:16]}... as {identity.address[:16]}...")
        return result

    async def _remove_item(self, rel: str, folder: Path) -> List[str]:
        if not await self.blob_sink.remove(folder, rel):
            raise NotFound(f"{rel} is not in the bundle")
        return []

    async def _stage(self, source: Optional[Path], apply: Optional[Apply]) -> _Staged:
        """Copy source (if any) into a fresh directory and apply the mutation there."""
        dir_name = self._new_dir_name()
        folder = self._folder(dir_name)
        self._staging.add(dir_name)

        committed = False
        try:
            if source is not None:
                if not source.is_dir():
                    raise NotFound(f"storage directory {source.name} is missing")
                await asyncio.to_thread(shutil.copytree, source, folder)
            else:
                folder.mkdir(parents=True)
            paths = await apply(folder) if apply else []
            committed = True
        finally:
            if not committed:
                self._discard(dir_name)

        return _Staged(dir_name=dir_name, folder=folder, paths=paths)

    async def _finish(
        self,
        staged: _Staged,
        kind: str,
        options: DescriptorOptions,
        identity: Optional[Identity] = None,
        stuff: Optional[Dict[str, str]] = None,
        sequence: int = 0,
        record: Optional[PointerRecord] = None,
        retire: Optional[IndexKey] = None,
        old_dir: Optional[str] = None,
        old_id: Optional[str] = None,
        namespace: str = SEED,
        extra: Optional[Dict[str, Any]] = None
    ) -> ContentResult:
        """
        Hash, sign, seed and commit a staged directory, then announce it.

        Records are signed locally and only put on the network once the
        index commit has happened, so the network never holds a sequence
        the index does not know about. Nothing before the commit is
        durable; on failure the staged directory is discarded and the
        retired entry stays in place. A failed put after the commit is
        raised to the caller and left for keep-alive to repeat.
        """
        stuff = dict(stuff or {})
        handle = None
        released = False
        committed = False
        message = None
        try:
            described = await asyncio.to_thread(self.engine.describe_directory, staged.folder, options)
            infohash = described.infohash

            if kind == KIND_ADDRESS and identity is not None:
                record = self.pointer.sign_record(identity.address, identity.secret, {"ih": infohash, **stuff}, sequence)
                logical_id = identity.address
            elif kind == KIND_ADDRESS:
                if record is None or record.infohash != infohash:
                    raise IntegrityError("restored bytes do not match the echoed record")
                logical_id = record.address
            elif kind == KIND_MESSAGE:
                message = self.pointer.message_record(infohash, stuff)
                logical_id = message.target
            else:
                logical_id = infohash

            if logical_id != old_id and self.index.get(namespace, kind, logical_id) is not None:
                return await self._merge_into(logical_id, kind, namespace, retire, old_dir, old_id)

            if old_id is not None:
                released = await self._release(old_id)
            if logical_id != old_id:
                # Same id joined from the other namespace
                await self._release(logical_id)
            handle = await self.swarm.seed(staged.folder, options)

            value = self._entry_value(staged.dir_name, options, infohash, identity, record, stuff, extra)
            self.index.replace(retire, (namespace, kind, logical_id), value)
            committed = True
        finally:
            if not committed:
                if handle is not None:
                    await self.swarm.leave(handle)
                self._discard(staged.dir_name)
                if released:
                    self.cache.set_state(old_id, ContentState.ABSENT)

        self._staging.discard(staged.dir_name)
        if old_dir and old_dir != staged.dir_name:
            shutil.rmtree(self._folder(old_dir), ignore_errors=True)
        if old_id is not None and old_id != logical_id:
            self.cache.set_state(old_id, ContentState.DESTROYED)

        active = ActiveHandle(logical_id, kind, namespace == SEED, staged.folder, handle, record)
        self.cache.put(active)

        logger.info(
            f"✅ Committed {kind} {logical_id[:16]}... -> {infohash[:16]}..."
            + (f" (seq={record.sequence})" if record else "")
        )

        try:
            if kind == KIND_ADDRESS and identity is not None:
                record = await self.pointer.put_record(record)
                active.record = record
            elif kind == KIND_MESSAGE:
                message = await self.pointer.publish_message(infohash, stuff)
        except Exception as e:
            logger.error(f"{logical_id[:16]}... is committed but its announcement failed, keep-alive will retry: {e}")
            raise

        return ContentResult(
            id=logical_id,
            kind=kind,
            infohash=infohash,
            own=namespace == SEED,
            active=active,
            record=record,
            message=message,
            identity=identity,
            paths=staged.paths,
            echo=(extra or {}).get("echo")
        )

    async def _merge_into(self, logical_id, kind, namespace, retire, old_dir, old_id) -> ContentResult:
        """The mutation produced content that is already indexed; fold into it."""
        logger.info(f"{kind} {logical_id[:16]}... already indexed, merging")
        if old_id is not None:
            await self._release(old_id)
            self.cache.set_state(old_id, ContentState.DESTROYED)
        if retire is not None and retire != (namespace, kind, logical_id):
            self.index.delete(*retire)
        if old_dir:
            shutil.rmtree(self._folder(old_dir), ignore_errors=True)

        async with self.cache.claim(logical_id):
            active = await self._materialize(kind, logical_id)
        return ContentResult(
            id=logical_id,
            kind=kind,
            infohash=active.infohash,
            own=active.own,
            active=active,
            record=active.record
        )

    async def _destroy(self, kind: str, logical_id: str):
        await self._release(logical_id)
        for namespace in NAMESPACES:
            entry = self.index.get(namespace, kind, logical_id)
            if entry is None:
                continue
            self.index.delete(namespace, kind, logical_id)
            shutil.rmtree(self._folder(entry["dir"]), ignore_errors=True)

        self.cache.set_state(logical_id, ContentState.DESTROYED)
        logger.info(f"Shredded {logical_id[:16]}...")

    async def _release(self, logical_id: str) -> bool:
        active = self.cache.pop(logical_id)
        if active is None:
            return False
        await self.swarm.leave(active.handle)
        return True

    # Helpers

    def _settle(self, logical_id: str):
        if self.cache.state_of(logical_id) is ContentState.DESTROYED:
            return
        state = ContentState.ACTIVE if self.cache.get(logical_id) else ContentState.ABSENT
        self.cache.set_state(logical_id, state)

    def _find_entry(self, kind: str, logical_id: str) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        for namespace in NAMESPACES:
            entry = self.index.get(namespace, kind, logical_id)
            if entry is not None:
                return namespace, entry
        return None, None

    def _entry_value(
        self,
        dir_name: str,
        options: DescriptorOptions,
        infohash: str,
        identity: Optional[Identity] = None,
        record: Optional[PointerRecord] = None,
        stuff: Optional[Dict[str, str]] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        value = {
            "dir": dir_name,
            "options": options.to_dict(),
            "infohash": infohash,
            "owner": identity.address if identity else (record.address if record else None),
            "title": identity.title if identity else None,
            "record": record.to_dict() if record else None,
            "stuff": dict(stuff or {}),
        }
        value.update(extra or {})
        return value

    @staticmethod
    def _echo_fields(namespace: str, kind: str, logical_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        record = entry.get("record")
        return {
            "echo": logical_id,
            "echo_kind": kind,
            "echo_namespace": namespace,
            "echo_sequence": record["sequence"] if record else None,
            "echo_stuff": (record["stuff"] if record else entry.get("stuff")) or {},
            "echo_title": entry.get("title"),
            "echo_record": record,
            "echo_options": entry.get("options"),
        }

    @staticmethod
    def _kept_echo_fields(entry: Dict[str, Any]) -> Dict[str, Any]:
        return {name: value for name, value in entry.items() if name.startswith("echo")}

    @staticmethod
    def _next_sequence(previous: Optional[int], requested: Optional[int]) -> int:
        minimum = 0 if previous is None else previous + 1
        if requested is None:
            return minimum
        if not isinstance(requested, int) or isinstance(requested, bool) or requested < minimum:
            raise InvalidArgument(f"sequence {requested!r} would regress below {minimum}")
        return requested

    def _identity_for(self, ref: ContentRef, entry: Optional[Dict[str, Any]]) -> Optional[Identity]:
        if isinstance(ref, ByTitle):
            return self._derive(ref.title)
        if not isinstance(ref, ByAddress):
            return None
        if ref.address is None:
            return self._derive(None)
        if ref.secret is not None:
            return identity_from_secret(ref.address, ref.secret)
        if entry and entry.get("title"):
            identity = self._derive(entry["title"])
            if identity.address == ref.address:
                return identity
        return None

    def _derive(self, title: Optional[str]) -> Identity:
        return derive_identity(self.root_seed, title, self.config.identity_namespace)

    def _logical_id(self, ref: ContentRef) -> Optional[str]:
        if isinstance(ref, ByInfohash):
            return ref.infohash
        if isinstance(ref, ByAddress):
            return ref.address
        if isinstance(ref, ByTitle):
            return self._derive(ref.title).address
        if isinstance(ref, ByMessage):
            return ref.target
        raise InvalidArgument(f"unknown content reference: {ref!r}")

    def _require_id(self, ref: ContentRef) -> str:
        logical_id = self._logical_id(ref)
        if logical_id is None:
            raise InvalidArgument("this operation needs an existing id")
        return logical_id

    def _budget(self, timeout: Optional[float]) -> Optional[float]:
        return self.config.timeout if timeout is None else timeout

    def _folder(self, dir_name: str) -> Path:
        return self.config.storage_dir / dir_name

    def _new_dir_name(self) -> str:
        return secrets.token_hex(10)

    def _discard(self, dir_name: str):
        self._staging.discard(dir_name)
        shutil.rmtree(self._folder(dir_name), ignore_errors=True)

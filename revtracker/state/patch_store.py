from loguru import logger
from pydantic import validate_call

from revtracker.common.errors import StorageReadFailure, StorageWriteFailure
from revtracker.pydantic_models.artifacts.patch import PatchArtifact
from revtracker.pydantic_models.common.constrained_types import DocumentIdentity
from revtracker.state.host import HostCollaborator


class PatchStore:
    """
    Keeps exactly one patch per document, at the location the host derives from the document identity.

    Nothing is cached, every `load` and `save` round-trips through the host.
    """

    # Dev Note:
    # There is no index either. The patch path is a pure function of the identity (see `resolve_patch_path`),
    # so a rename orphans the old patch and the next run starts a fresh chain.

    def __init__(self, host: HostCollaborator) -> None:
        if host is None:
            raise ValueError("PatchStore requires a host")
        self._host = host

    @validate_call
    def patch_path(self, identity: DocumentIdentity) -> str:
        return self._host.resolve_patch_path(identity)

    @validate_call
    async def load(self, identity: DocumentIdentity) -> PatchArtifact | None:
        """
        Load the stored patch for `identity`.

        Returns:
            PatchArtifact | None: The stored artifact, or None if this document never had one.
                                  An existing but empty file is returned as an (empty, thus malformed) artifact.

        Raises:
            StorageReadFailure: If the host failed to read an existing blob.
        """
        path = self.patch_path(identity)
        try:
            content = await self._host.read_blob(path)
        except OSError as e:
            logger.error(f"[Store] Reading the patch for {identity} at {path} failed: {e}")
            raise StorageReadFailure(f"Could not read patch at {path}: {e}") from e
        if content is None:
            logger.debug(f"[Store] No patch stored for {identity} (looked at {path})")
            return None
        logger.debug(f"[Store] Loaded patch for {identity} from {path} ({len(content)} characters)")
        return PatchArtifact(content=content)

    @validate_call
    async def save(self, identity: DocumentIdentity, artifact: PatchArtifact) -> None:
        """
        Store `artifact` as the patch for `identity`, replacing any earlier one.

        Raises:
            StorageWriteFailure: If the host failed to write. The previously stored patch is left as it was.
        """
        path = self.patch_path(identity)
        try:
            await self._host.write_blob(path, artifact.content)
        except OSError as e:
            logger.error(f"[Store] Storing the patch for {identity} at {path} failed: {e}")
            raise StorageWriteFailure(f"Could not write patch to {path}: {e}") from e
        logger.info(f"[Store] Stored patch for {identity} at {path}")

# Overview: File storage for bank transfer proof images.

from __future__ import annotations

import os
from abc import ABC, abstractmethod

from flask import current_app


PROOF_STORAGE_EXTENSION = "tubeshop.proof_storage"


class StorageError(Exception):
    """A file could not be written or removed."""


class ProofStorage(ABC):
    @abstractmethod
    def save(self, path: str, data: bytes, content_type: str) -> str:
        """Store bytes at a relative path and return a URL for them."""

    @abstractmethod
    def delete(self, paths: list[str]) -> None:
        ...


class LocalProofStorage(ProofStorage):
    """Writes under base_dir; URLs are public_url + relative path."""

    def __init__(self, base_dir: str, public_url: str):
        self.base_dir = base_dir
        self.public_url = public_url.rstrip("/")

    def _full_path(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.base_dir, path))
        if not full.startswith(os.path.abspath(self.base_dir) + os.sep):
            raise StorageError(f"Refusing to write outside storage root: {path}")
        return full

    def save(self, path: str, data: bytes, content_type: str) -> str:
        full = self._full_path(path)
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            # "xb": never overwrite an existing proof
            with open(full, "xb") as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Failed to store {path}: {exc}") from exc
        return f"{self.public_url}/{path}"

    def delete(self, paths: list[str]) -> None:
        for path in paths:
            try:
                os.remove(self._full_path(path))
            except FileNotFoundError:
                continue
            except OSError:
                current_app.logger.exception("Failed to remove proof file %s", path)


def get_proof_storage() -> ProofStorage:
    storage = current_app.extensions.get(PROOF_STORAGE_EXTENSION)
    if storage is None:
        base_dir = current_app.config.get("DEPOSIT_PROOF_UPLOAD_DIR", "instance/deposit-proofs")
        if not os.path.isabs(base_dir):
            base_dir = os.path.join(current_app.root_path, os.pardir, base_dir)
        storage = LocalProofStorage(
            base_dir=base_dir,
            public_url=current_app.config.get("DEPOSIT_PROOF_PUBLIC_URL", "/media/deposit-proofs"),
        )
        current_app.extensions[PROOF_STORAGE_EXTENSION] = storage
    return storage

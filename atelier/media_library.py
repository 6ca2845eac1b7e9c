"""
Document and image metadata.

Blobs live in external object storage; only the public URL, the storage
path and file metadata are kept here. Everyone may view and upload;
changing or deleting a record is limited to its uploader and the chief
architect. Deletes return the storage path so the caller can remove the
blob.
"""

import logging
import mimetypes
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Document, Image, new_id, utc_now_iso
from .role_policy import Actor, Capability, require
from .store import DataStore

logger = logging.getLogger("media_library")

DOCUMENTS_TABLE = "documents"
IMAGES_TABLE = "images"

DOCUMENT_FIELDS = frozenset({
    "name", "file_path", "url", "file_size", "mime_type", "file_extension", "description", "project_id",
})
IMAGE_FIELDS = frozenset({
    "name", "url", "file_path", "project_id", "task_id", "file_size", "mime_type", "phase", "description", "is_featured",
})
DOCUMENT_EDITABLE = frozenset({"name", "description", "project_id"})
IMAGE_EDITABLE = frozenset({"name", "description", "phase", "is_featured", "project_id", "task_id"})


def _validate(data: Dict[str, Any], allowed, required) -> None:
    errors = [f"{key} is required" for key in required if not data.get(key)]
    unknown = set(data) - allowed
    if unknown:
        errors.append(f"Unknown fields: {sorted(unknown)}")
    size = data.get("file_size")
    if size is not None and (not isinstance(size, int) or size < 0):
        errors.append("file_size must be a non-negative integer")
    if errors:
        raise ValidationError(errors)


class MediaLibrary:

    def __init__(self, store: DataStore):
        self._store = store

    def _check_can_manage(self, actor: Actor, uploaded_by: str, kind: str) -> None:
        if uploaded_by == actor.user_id or actor.can(Capability.MANAGE_ANY_DOCUMENT):
            return
        raise AuthorizationError(
            action=f"manage_{kind}",
            role=actor.role.value,
            reason=f"Only the uploader or the chief architect may change this {kind}",
        )

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def get_document(self, document_id: str) -> Document:
        row = self._store.get(DOCUMENTS_TABLE, document_id)
        if row is None:
            raise NotFoundError("document", document_id)
        return Document.from_dict(row)

    def list_documents(self, actor: Actor, project_id: Optional[str] = None) -> List[Document]:
        require(actor, Capability.VIEW_DOCUMENTS)
        eq = {"project_id": project_id} if project_id else None
        rows = self._store.select(DOCUMENTS_TABLE, eq=eq, order_by="created_at", descending=True)
        return [Document.from_dict(r) for r in rows]

    def register_document(self, actor: Actor, data: Dict[str, Any]) -> Document:
        require(actor, Capability.UPLOAD_DOCUMENTS)
        _validate(data, DOCUMENT_FIELDS, ("name", "file_path", "url"))

        fields = {k: v for k, v in data.items() if v is not None}
        suffix = PurePosixPath(fields["name"]).suffix
        fields.setdefault("file_extension", suffix.lstrip(".").lower() or None)
        fields.setdefault("mime_type", mimetypes.guess_type(fields["name"])[0])

        document = Document(id=new_id(), uploaded_by=actor.user_id, **fields)
        self._store.insert(DOCUMENTS_TABLE, document.to_dict())
        logger.info(f"Document {document.id} '{document.name}' uploaded by {actor.user_id}")
        return document

    def update_document(self, actor: Actor, document_id: str, patch: Dict[str, Any]) -> Document:
        _validate(patch, DOCUMENT_EDITABLE, ())
        document = self.get_document(document_id)
        self._check_can_manage(actor, document.uploaded_by, "document")

        changes = dict(patch)
        changes["updated_at"] = utc_now_iso()
        return Document.from_dict(self._store.update(DOCUMENTS_TABLE, document_id, changes))

    def delete_document(self, actor: Actor, document_id: str) -> str:
        """Delete the record and return its storage path."""
        document = self.get_document(document_id)
        self._check_can_manage(actor, document.uploaded_by, "document")
        self._store.delete(DOCUMENTS_TABLE, document_id)
        logger.info(f"Document {document_id} deleted by {actor.user_id}")
        return document.file_path

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def get_image(self, image_id: str) -> Image:
        row = self._store.get(IMAGES_TABLE, image_id)
        if row is None:
            raise NotFoundError("image", image_id)
        return Image.from_dict(row)

    def list_images(
        self,
        actor: Actor,
        project_id: Optional[str] = None,
        task_id: Optional[str] = None,
        featured_only: bool = False,
    ) -> List[Image]:
        require(actor, Capability.VIEW_DOCUMENTS)
        eq: Dict[str, Any] = {}
        if project_id:
            eq["project_id"] = project_id
        if task_id:
            eq["task_id"] = task_id
        if featured_only:
            eq["is_featured"] = True
        rows = self._store.select(IMAGES_TABLE, eq=eq, order_by="created_at", descending=True)
        return [Image.from_dict(r) for r in rows]

    def register_image(self, actor: Actor, data: Dict[str, Any]) -> Image:
        require(actor, Capability.UPLOAD_DOCUMENTS)
        _validate(data, IMAGE_FIELDS, ("name", "url"))

        fields = {k: v for k, v in data.items() if v is not None}
        fields.setdefault("mime_type", mimetypes.guess_type(fields["name"])[0])
        image = Image(id=new_id(), uploaded_by=actor.user_id, **fields)
        self._store.insert(IMAGES_TABLE, image.to_dict())
        logger.info(f"Image {image.id} uploaded by {actor.user_id} (project={image.project_id})")
        return image

    def update_image(self, actor: Actor, image_id: str, patch: Dict[str, Any]) -> Image:
        _validate(patch, IMAGE_EDITABLE, ())
        image = self.get_image(image_id)
        self._check_can_manage(actor, image.uploaded_by, "image")
        return Image.from_dict(self._store.update(IMAGES_TABLE, image_id, dict(patch)))

    def delete_image(self, actor: Actor, image_id: str) -> Optional[str]:
        image = self.get_image(image_id)
        self._check_can_manage(actor, image.uploaded_by, "image")
        self._store.delete(IMAGES_TABLE, image_id)
        return image.file_path

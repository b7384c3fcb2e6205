from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from datetime import datetime, timedelta, timezone

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from .config import settings

logger = logging.getLogger(__name__)

SAS_LIFETIME = timedelta(minutes=15)


class MediaStore:
    """Question media (images etc.) kept in an Azure Blob container.

    The container is created on first upload, publicly readable when the
    account allows it. Uploads into a private container come back as
    short-lived read-only SAS URLs.
    """

    def __init__(self, connection_string: str | None = None, container_name: str | None = None):
        self.connection_string = connection_string or settings.AZURE_STORAGE_CONNECTION_STRING
        self.container_name = container_name or settings.AZURE_STORAGE_CONTAINER
        self._service: BlobServiceClient | None = None
        self._is_private: bool | None = None

    @property
    def configured(self) -> bool:
        return bool(self.connection_string)

    def _get_service(self) -> BlobServiceClient:
        if self._service is None:
            if not self.connection_string:
                raise RuntimeError("Azure Blob Storage is not configured")
            self._service = BlobServiceClient.from_connection_string(self.connection_string)
        return self._service

    async def _ensure_container(self, container_client) -> bool:
        """Create the container if needed; returns True when it is private."""
        if self._is_private is not None:
            return self._is_private

        is_private: bool | None = None
        try:
            await asyncio.to_thread(container_client.create_container, public_access="blob")
            is_private = False
        except ResourceExistsError:
            pass
        except HttpResponseError as exc:
            error_code = getattr(exc, "error_code", None) or getattr(getattr(exc, "error", None), "code", None)
            if error_code != "PublicAccessNotPermitted":
                raise
            logger.info("public containers not permitted, using private container %s", self.container_name)
            try:
                await asyncio.to_thread(container_client.create_container)
            except ResourceExistsError:
                pass
            is_private = True

        if is_private is None:
            properties = await asyncio.to_thread(container_client.get_container_properties)
            is_private = getattr(properties, "public_access", None) not in {"blob", "container"}

        self._is_private = is_private
        return is_private

    async def upload(self, owner: str, filename: str, content: bytes, content_type: str | None) -> str:
        if not content:
            raise ValueError("Uploaded file was empty")

        service = self._get_service()
        container_client = service.get_container_client(self.container_name)
        is_private = await self._ensure_container(container_client)

        guessed_type = content_type or mimetypes.guess_type(filename)[0]
        extension = os.path.splitext(filename)[1]
        if not extension and guessed_type:
            extension = mimetypes.guess_extension(guessed_type) or ""

        blob_name = f"{owner}/{uuid.uuid4().hex}{extension}".strip("/")
        blob_client = container_client.get_blob_client(blob_name)

        kwargs = {}
        if guessed_type:
            kwargs["content_settings"] = ContentSettings(content_type=guessed_type)
        await asyncio.to_thread(blob_client.upload_blob, content, overwrite=True, **kwargs)
        logger.info("uploaded media %s (%s bytes)", blob_name, len(content))

        if is_private:
            return await self._signed_url(service, blob_name, blob_client.url)
        return blob_client.url

    async def _signed_url(self, service: BlobServiceClient, blob_name: str, base_url: str) -> str:
        now = datetime.now(timezone.utc)
        expiry = now + SAS_LIFETIME
        sas_kwargs = dict(
            account_name=service.account_name,
            container_name=self.container_name,
            blob_name=blob_name,
            permission=BlobSasPermissions(read=True),
            expiry=expiry,
        )

        credential = getattr(service, "credential", None)
        if isinstance(credential, TokenCredential):
            delegation_key = await asyncio.to_thread(service.get_user_delegation_key, now, expiry)
            sas_token = generate_blob_sas(user_delegation_key=delegation_key, **sas_kwargs)
        elif credential is not None:
            sas_token = generate_blob_sas(credential=credential, **sas_kwargs)
        else:
            raise RuntimeError("Azure Blob Storage credential is required for SAS generation")

        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{sas_token}"

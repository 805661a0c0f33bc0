"""
Upload API endpoint.

``POST /apps/upload`` accepts a package plus optional CI fields, ingests it
as a new release and answers with the stored release. With ``channel_key``
the release goes to that channel; without one the app, scheme and channel
are derived from the package.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.api.deps import get_current_user
from appdrop.api.v1.releases import ReleaseResponse, build_release_response
from appdrop.db.database import get_db
from appdrop.db.models import UserDB
from appdrop.services.errors import (
    BundleMismatchError,
    IdentityConflictError,
    PackageRejectedError,
    PersistenceError,
    UploadTooLargeError,
)
from appdrop.services.ingest import UploadRequest, ingest_release
from appdrop.services.package_info import ParseErrorKind
from appdrop.services.storage import stage_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apps", tags=["upload"])

_REJECTED_STATUS = {
    ParseErrorKind.UNSUPPORTED_FILE_TYPE: 415,
    ParseErrorKind.MALFORMED_PACKAGE: 422,
    ParseErrorKind.UNKNOWN_FAILURE: 422,
}


@router.post("/upload", response_model=ReleaseResponse, status_code=201)
async def upload_release(
    file: UploadFile = File(..., description="iOS / Android / macOS package"),
    channel_key: Optional[str] = Form(None, description="Key of an existing channel"),
    name: Optional[str] = Form(None, description="App name, defaults to the package name"),
    password: Optional[str] = Form(None),
    release_type: Optional[str] = Form(None),
    source: Optional[str] = Form(None),
    changelog: Optional[str] = Form(None, description="Plain text or JSON"),
    branch: Optional[str] = Form(None),
    git_commit: Optional[str] = Form(None),
    ci_url: Optional[str] = Form(None),
    devices: Optional[str] = Form(None, description="Ignored, taken from the package"),
    custom_fields: Optional[str] = Form(None, description="JSON"),
    slug: Optional[str] = Form(None),
    git_url: Optional[str] = Form(None),
    user: UserDB = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Upload a package and create a release.

    The release is committed before web hooks are notified; hook failures
    never affect the response.
    """
    request = UploadRequest(
        channel_key=channel_key,
        name=name,
        password=password,
        release_type=release_type,
        source=source,
        changelog=changelog,
        branch=branch,
        git_commit=git_commit,
        ci_url=ci_url,
        devices=devices,
        custom_fields=custom_fields,
        slug=slug,
        git_url=git_url,
    )

    try:
        staged = await stage_upload(file)
    except UploadTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))

    try:
        release = await ingest_release(db, owner=user, staged=staged, request=request)
    except PackageRejectedError as e:
        raise HTTPException(status_code=_REJECTED_STATUS[e.kind], detail=e.public_message)
    except BundleMismatchError as e:
        logger.info(f"Upload rejected: {e}")
        return JSONResponse(
            status_code=422,
            content={
                "error": "bundle_mismatch",
                "message": str(e),
                "expected": e.expected,
                "actual": e.actual,
                "channel_id": e.channel_id,
            },
        )
    except IdentityConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceError:
        raise HTTPException(status_code=500, detail="Failed to save the release")
    finally:
        staged.discard()

    return build_release_response(release)

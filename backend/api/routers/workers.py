"""Workers router: principal/foreign site assignment and deactivation."""
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import List

from ..dependencies import get_db

router = APIRouter()


class PrincipalSiteUpdate(BaseModel):
    site_id: int = Field(..., gt=0)


class ForeignSitesUpdate(BaseModel):
    site_ids: List[int] = Field(default_factory=list)


@router.get("/api/workers/{worker_id}", tags=["Workers"], summary="Get worker")
def get_worker(worker_id: str):
    worker = get_db().get_worker(worker_id)
    if worker is None:
        raise HTTPException(status_code=404, detail=f"Worker {worker_id} not found")
    return worker


@router.put("/api/workers/{worker_id}/principal-site", tags=["Workers"], summary="Change principal site")
def put_principal_site(worker_id: str, body: PrincipalSiteUpdate):
    """Closes the open site-history entry and opens one for the new site in a single save."""
    return get_db().change_principal_site(worker_id, body.site_id)


@router.put("/api/workers/{worker_id}/foreign-sites", tags=["Workers"], summary="Replace foreign sites")
def put_foreign_sites(worker_id: str, body: ForeignSitesUpdate):
    db = get_db()
    for site_id in body.site_ids:
        db.require_site(site_id)
    return db.set_foreign_sites(worker_id, body.site_ids)


@router.post("/api/workers/{worker_id}/deactivate", tags=["Workers"], summary="Deactivate worker")
def deactivate_worker(worker_id: str):
    return get_db().deactivate_worker(worker_id)

from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from poolsync import db
from poolsync.errors import PoolSyncError
from poolsync.models import InstanceEvent
from poolsync.service import AutoscalerService, NotLeaderError, build_service
from poolsync.settings import settings

app = FastAPI(title="poolsync operator API")
security = HTTPBasic()

service: AutoscalerService | None = None


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    expected_pass = settings.api_password or ""
    ok_user = secrets.compare_digest(credentials.username, settings.api_user)
    ok_pass = bool(expected_pass) and secrets.compare_digest(credentials.password, expected_pass)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def get_service() -> AutoscalerService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


@app.on_event("startup")
async def startup() -> None:
    global service
    db.init_db()
    service = build_service(settings)
    await service.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    global service
    if service is not None:
        await service.stop()
        service = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/status")
def get_status(username: str = Depends(get_current_username), svc: AutoscalerService = Depends(get_service)):
    return svc.status()


@app.get("/events")
def get_events(limit: int = 100, virtual_server: str | None = None, username: str = Depends(get_current_username)):
    limit = max(1, min(1000, int(limit)))
    return db.latest_events(limit=limit, virtual_server=virtual_server)


@app.post("/sync")
async def post_sync(username: str = Depends(get_current_username), svc: AutoscalerService = Depends(get_service)):
    db.log_event("INFO", f"Full sync requested by {username}")
    try:
        report = await svc.sync_now()
    except NotLeaderError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except PoolSyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if report is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A full sync is already running")
    return report.as_dict()


@app.post("/instance-events")
async def post_instance_event(
    event: InstanceEvent,
    username: str = Depends(get_current_username),
    svc: AutoscalerService = Depends(get_service),
):
    db.log_event("INFO", f"{event.action} for '{event.instance}' submitted by {username}", entity=event.instance)
    try:
        outcome = await svc.submit(event)
    except NotLeaderError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"status": outcome}


def main() -> None:
    """Run the operator API using uvicorn."""
    import uvicorn

    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()

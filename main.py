import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from conditions import CareRequirementCatalog, ConditionClassifier
from config import DispatchSettings
from database import DocumentRepository, create_repository
from drivers import DriverCandidateSelector
from errors import DispatchError
from hospitals import HospitalMatcher
from locations import LocationFreshnessTracker, LocationService, utcnow
from notifier import Notifier, create_notifier
from rides import (
    RideDispatcher, RideStateMachine,
    agent_active_ride, agent_ride_history, driver_active_ride, driver_ride_history, get_ride, pending_requests,
)
from schemas import LocationRequestIn, LocationUpdateIn, RideRequestIn, RideResponseIn, RideStatusUpdateIn

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    repo: DocumentRepository
    notifier: Notifier
    settings: DispatchSettings
    locations: LocationService
    dispatcher: RideDispatcher
    rides: RideStateMachine


def build_services(repo=None, notifier=None, settings: Optional[DispatchSettings] = None,
                   clock=utcnow, sleep=asyncio.sleep) -> Services:
    """Wire the engine together. Anything not passed in comes from config."""
    if repo is None:
        repo = create_repository(config.DATABASE_BACKEND, config.DATABASE_URL, config.DATABASE_NAME)
    if notifier is None:
        notifier = create_notifier(config.PUSH_GATEWAY_URL, config.PUSH_GATEWAY_KEY, config.PUSH_TIMEOUT_SECONDS)
    settings = settings or config.load_settings()

    tracker = LocationFreshnessTracker(settings.freshness_window_minutes, clock)
    locations = LocationService(repo, notifier, clock)
    catalog = CareRequirementCatalog()
    dispatcher = RideDispatcher(
        repo,
        notifier,
        ConditionClassifier(),
        catalog,
        DriverCandidateSelector(repo, tracker, locations, settings, sleep),
        HospitalMatcher(settings.hospital_grace_minutes),
        clock,
    )
    return Services(repo, notifier, settings, locations, dispatcher, RideStateMachine(repo, notifier, clock))


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


@router.get("/")
def read_root():
    return {"message": "ETS dispatch backend is running"}


@router.get("/health")
def health(services: Services = Depends(get_services)):
    connected = services.repo.ping()
    return {
        "backend": "running",
        "database": services.repo.backend,
        "connection_status": "Connected" if connected else "Not Connected",
    }


# Dispatch

@router.post("/request-ride")
async def request_ride(payload: RideRequestIn, services: Services = Depends(get_services)):
    return await services.dispatcher.request_ride(
        payload.chips_agent_id,
        payload.symptoms,
        payload.pickup_lat,
        payload.pickup_lng,
        is_pregnant=payload.is_pregnant,
        is_postpartum=payload.is_postpartum,
        is_urgent=payload.is_urgent,
    )


@router.post("/respond-to-ride-request")
async def respond_to_ride_request(payload: RideResponseIn, services: Services = Depends(get_services)):
    return await services.rides.respond(payload.ride_id, payload.driver_id, payload.response)


# Driver location

@router.post("/update-driver-location")
async def update_driver_location(payload: LocationUpdateIn, services: Services = Depends(get_services)):
    result = services.locations.update_location(
        payload.driver_id,
        payload.lat,
        payload.lng,
        source=payload.source,
        accuracy=payload.accuracy,
        immediate=payload.immediate,
        timestamp=payload.timestamp,
    )
    return {"success": True, **result}


@router.post("/request-driver-location")
async def request_driver_location(payload: LocationRequestIn, services: Services = Depends(get_services)):
    return await services.locations.request_location(payload.driver_id)


# Rides

@router.get("/rides/{ride_id}")
async def read_ride(ride_id: str, services: Services = Depends(get_services)):
    return get_ride(services.repo, ride_id)


@router.patch("/rides/{ride_id}")
async def update_ride(ride_id: str, payload: RideStatusUpdateIn, services: Services = Depends(get_services)):
    return services.rides.advance(ride_id, payload.driver_id, payload.status.value)


@router.post("/rides/{ride_id}/cancel")
async def cancel_ride(ride_id: str, services: Services = Depends(get_services)):
    return services.rides.cancel(ride_id)


@router.get("/drivers/{driver_id}/active-ride")
async def read_driver_active_ride(driver_id: str, services: Services = Depends(get_services)):
    return driver_active_ride(services.repo, driver_id)


@router.get("/agents/{agent_id}/active-ride")
async def read_agent_active_ride(agent_id: str, services: Services = Depends(get_services)):
    return agent_active_ride(services.repo, agent_id)


@router.get("/drivers/{driver_id}/pending-requests")
async def read_pending_requests(driver_id: str, services: Services = Depends(get_services)):
    return pending_requests(services.repo, driver_id)


@router.get("/driver-ride-history/{driver_id}")
async def read_driver_ride_history(driver_id: str, services: Services = Depends(get_services)):
    return driver_ride_history(services.repo, driver_id)


@router.get("/chips-ride-history/{agent_id}")
async def read_agent_ride_history(agent_id: str, services: Services = Depends(get_services)):
    return agent_ride_history(services.repo, agent_id)


# Errors

async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"detail": f"Invalid request: {problems}"})


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.services.dispatcher.drain()


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="ETS Dispatch API",
        description="Emergency transport matching for obstetric referrals",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

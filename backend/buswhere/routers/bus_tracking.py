import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket

from ..errors import BusWhereError, InvalidInput, UpstreamFailure
from ..models.transit import BusStatusUpdate, LocationUpdate, PassengerBoarding
from ..services.redis_service import LIVE_LOCATIONS_KEY, RedisService
from ..services.tracking_controller import TrackingController
from ..services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bus-tracking", tags=["bus-tracking"])


def get_tracking_service(request: Request) -> TrackingService:
    return request.app.state.services["tracking"]


def get_redis_service(request: Request) -> RedisService:
    return request.app.state.redis


def get_tracking_controller(request: Request) -> Optional[TrackingController]:
    return request.app.state.controller


async def _refresh_live(controller: Optional[TrackingController]) -> None:
    if controller is not None:
        await controller.refresh_live_locations()


@router.get("/search")
async def search_buses(
    query: str = "",
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    tracking: TrackingService = Depends(get_tracking_service),
):
    """Search active routes and their buses by route number, name or endpoint."""
    try:
        results = await tracking.search_buses(query, latitude, longitude)
        return {"data": results, "count": len(results)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error searching buses: {str(e)}")
        raise UpstreamFailure("Failed to search buses", details=str(e))


@router.get("/live-locations")
async def get_live_locations(
    request: Request,
    tracking: TrackingService = Depends(get_tracking_service),
    redis: RedisService = Depends(get_redis_service),
    controller: Optional[TrackingController] = Depends(get_tracking_controller),
):
    """Get bus locations recorded in the last few minutes."""
    if controller is not None:
        locations = controller.live_locations
        return {"data": locations, "count": len(locations)}
    try:
        cached = redis.get_data(LIVE_LOCATIONS_KEY)
        if cached is not None:
            return {"data": cached, "count": len(cached)}

        locations = await tracking.get_live_locations()
        ttl = request.app.state.settings.live_locations_cache_ttl
        if ttl:
            redis.set_data(LIVE_LOCATIONS_KEY, locations, expiry=ttl)
        return {"data": locations, "count": len(locations)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error fetching live locations: {str(e)}")
        raise UpstreamFailure("Failed to get live locations", details=str(e))


@router.get("/routes")
async def get_routes(tracking: TrackingService = Depends(get_tracking_service)):
    """List active routes."""
    try:
        routes = await tracking.get_routes()
        return {"data": routes, "count": len(routes)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error fetching routes: {str(e)}")
        raise UpstreamFailure("Failed to get routes", details=str(e))


@router.get("/stops")
async def get_stops(
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius: float = 2,
    tracking: TrackingService = Depends(get_tracking_service),
):
    """List active stops, or those within `radius` km of a point."""
    try:
        stops = await tracking.get_nearby_stops(latitude, longitude, radius)
        return {"data": stops, "count": len(stops)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error fetching stops: {str(e)}")
        raise UpstreamFailure("Failed to get stops", details=str(e))


@router.get("/route-details")
async def get_route_details(
    route_id: Optional[str] = None,
    tracking: TrackingService = Depends(get_tracking_service),
):
    """Get a route with its first stops."""
    if not route_id:
        raise InvalidInput("Route ID is required")
    try:
        details = await tracking.get_route_details(route_id)
        return {"data": details}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error fetching route {route_id}: {str(e)}")
        raise UpstreamFailure("Failed to get route details", details=str(e))


@router.post("/update-location")
async def update_location(
    update: LocationUpdate,
    tracking: TrackingService = Depends(get_tracking_service),
    redis: RedisService = Depends(get_redis_service),
    controller: Optional[TrackingController] = Depends(get_tracking_controller),
):
    """Record a driver-reported location and, optionally, the passenger count."""
    try:
        location = await tracking.update_bus_location(update)
        redis.delete_data(LIVE_LOCATIONS_KEY)
        await _refresh_live(controller)
        return {"success": True, "message": "Location updated successfully", "data": location}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error updating location of bus {update.bus_id}: {str(e)}")
        raise UpstreamFailure("Failed to update location", details=str(e))


@router.post("/passenger-board")
async def passenger_board(
    boarding: PassengerBoarding,
    tracking: TrackingService = Depends(get_tracking_service),
    controller: Optional[TrackingController] = Depends(get_tracking_controller),
):
    """Record a passenger boarding a bus."""
    try:
        record = await tracking.record_passenger_boarding(boarding)
        await _refresh_live(controller)
        return {"success": True, "message": "Boarding recorded successfully", "data": record}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error recording boarding on bus {boarding.bus_id}: {str(e)}")
        raise UpstreamFailure("Failed to record boarding", details=str(e))


@router.put("/bus-status")
async def update_bus_status(
    update: BusStatusUpdate,
    tracking: TrackingService = Depends(get_tracking_service),
    controller: Optional[TrackingController] = Depends(get_tracking_controller),
):
    """Update a bus's active flag or passenger count."""
    try:
        bus = await tracking.update_bus_status(update)
        await _refresh_live(controller)
        return {"success": True, "message": "Bus status updated successfully", "data": bus}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Error updating bus {update.bus_id}: {str(e)}")
        raise UpstreamFailure("Failed to update bus status", details=str(e))


@router.websocket("/ws/bus/{bus_id}")
async def bus_updates(websocket: WebSocket, bus_id: str):
    """Push simulated location updates for one bus until the client leaves."""
    simulator = websocket.app.state.simulator
    await websocket.accept()
    if simulator is None or simulator.store.get_bus(bus_id) is None:
        await websocket.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    subscription = simulator.subscribe_to_bus(
        bus_id, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
    )

    async def forward():
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    sender = asyncio.create_task(forward())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sender.cancel()
        subscription.cancel()
        logger.info(f"Bus {bus_id} update stream closed")

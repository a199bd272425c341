# server/app/routes.py

from    enum                    import Enum
from    datetime                import date, datetime, timezone
from    typing                  import List, Optional
from    fastapi                 import APIRouter, Depends, Query, Request, status
from    pydantic                import BaseModel
from    automation.conditions   import RuleCreate, RuleRead, RuleUpdate
from    automation.snapshot     import WeatherSnapshot
from    config                  import constants
from    database.models         import DeviceCreate, DeviceRead, DeviceUpdate
from    devices.dispatcher      import DeviceAction
from    utils.errors            import UpstreamFetchError
from    utils.logger            import getLogger

logger          = getLogger("Routes")
router          = APIRouter()


def get_services(request: Request):
    return request.app.state.services


class ControlAction(str, Enum):
    turn_on  = "turn_on"
    turn_off = "turn_off"


class ControlRequest(BaseModel):
    action: ControlAction


# Devices

@router.get(constants.DEVICES_API_ENDPOINT, response_model=List[DeviceRead])
async def list_devices(services=Depends(get_services)):
    return services.registry.get_snapshot()


@router.get(constants.DEVICES_API_ENDPOINT + "/{device_id}", response_model=DeviceRead)
async def get_device(device_id: int, services=Depends(get_services)):
    return services.registry.get_device(device_id)


@router.post(constants.DEVICES_API_ENDPOINT, response_model=DeviceRead, status_code=status.HTTP_201_CREATED)
async def create_device(payload: DeviceCreate, services=Depends(get_services)):
    logger.info(f"create device -> payload: {payload.model_dump_json(by_alias=True)}")
    device = services.registry.create_device(payload)
    subscribe = getattr(services.transport, "subscribe_device", None)
    if subscribe:
        subscribe(device.mqtt_topic)                                    # Listen to the new device's topic
    return device


@router.patch(constants.DEVICES_API_ENDPOINT + "/{device_id}", response_model=DeviceRead)
async def update_device(device_id: int, payload: DeviceUpdate, services=Depends(get_services)):
    before = services.registry.get_device(device_id)
    device = services.registry.update_device(device_id, payload)
    if device.mqtt_topic != before.mqtt_topic:
        unsubscribe = getattr(services.transport, "unsubscribe_device", None)
        subscribe = getattr(services.transport, "subscribe_device", None)
        if unsubscribe and subscribe:
            unsubscribe(before.mqtt_topic)
            subscribe(device.mqtt_topic)
    return device


@router.delete(constants.DEVICES_API_ENDPOINT + "/{device_id}")
async def delete_device(device_id: int, services=Depends(get_services)):
    device = services.registry.delete_device(device_id)
    unsubscribe = getattr(services.transport, "unsubscribe_device", None)
    if unsubscribe:
        unsubscribe(device.mqtt_topic)
    return {"success": True, "id": device_id}


@router.post(constants.DEVICES_API_ENDPOINT + "/{device_id}/control")
async def control_device(device_id: int, payload: ControlRequest, services=Depends(get_services)):
    action = DeviceAction.turn_on if payload.action == ControlAction.turn_on else DeviceAction.turn_off
    result = services.dispatcher.dispatch(device_id, action)
    return {
        "success": True,
        "message": "Turned on device" if action.is_on else "Turned off device",
        "topic": result.topic,
    }


# Automation rules

@router.get(constants.RULES_API_ENDPOINT, response_model=List[RuleRead])
async def list_rules(services=Depends(get_services)):
    return services.rules.list_rules()


@router.get(constants.RULES_API_ENDPOINT + "/{rule_id}", response_model=RuleRead)
async def get_rule(rule_id: int, services=Depends(get_services)):
    return services.rules.get_rule(rule_id)


@router.post(constants.RULES_API_ENDPOINT, response_model=RuleRead, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleCreate, services=Depends(get_services)):
    return services.rules.create_rule(payload)


@router.patch(constants.RULES_API_ENDPOINT + "/{rule_id}", response_model=RuleRead)
async def update_rule(rule_id: int, payload: RuleUpdate, services=Depends(get_services)):
    return services.rules.update_rule(rule_id, payload)


@router.delete(constants.RULES_API_ENDPOINT + "/{rule_id}")
async def delete_rule(rule_id: int, services=Depends(get_services)):
    services.rules.delete_rule(rule_id)
    return {"success": True}


@router.post(constants.RULES_API_ENDPOINT + "/{rule_id}/toggle", response_model=RuleRead)
async def toggle_rule(rule_id: int, services=Depends(get_services)):
    return services.rules.toggle_rule(rule_id)


# Automation runtime

@router.get(constants.AUTOMATION_API_ENDPOINT + "/status")
async def automation_status(services=Depends(get_services)):
    scheduler = services.scheduler
    return {
        "stats": scheduler.stats(),
        "rules": scheduler.states(),
        "trace": scheduler.trace(),
        "telemetry": dict(services.ingestor.stats),
    }


@router.post(constants.AUTOMATION_API_ENDPOINT + "/tick")
def run_tick(services=Depends(get_services)):
    # Plain def: FastAPI runs it in the threadpool, like the background ticks
    report = services.scheduler.tick()
    return {
        "skipped": report.skipped,
        "evaluated": report.evaluated,
        "satisfied": report.satisfied,
        "fired": report.fired,
        "failed": report.failed,
        "dispatchErrors": {str(k): v for k, v in report.dispatch_errors.items()},
        "staleDevices": report.stale_devices,
        "retried": report.retried,
    }


# Upstream data

@router.get(constants.PRICES_API_ENDPOINT)
def electricity_prices(date_: Optional[date] = Query(default=None, alias="date"),
                       zone: Optional[str] = None,
                       services=Depends(get_services)):
    feed = services.price_feed
    day = date_ or datetime.now(timezone.utc).astimezone(feed.timezone).date()
    return feed.fetch_raw(day, zone)


@router.get(constants.WEATHER_API_ENDPOINT, response_model=WeatherSnapshot)
def weather(services=Depends(get_services)):
    snapshot = services.weather_feed.current(datetime.now(timezone.utc))
    if snapshot is None:
        raise UpstreamFetchError("weather", "no recent forecast available")
    return snapshot

# server/automation/rules.py

import  threading
from    typing          import Callable, List
from    pydantic        import ValidationError as SchemaError
from    sqlmodel        import select
from    automation.conditions import RuleCreate, RuleRead, RuleUpdate
from    database.db     import get_session
from    database.models import AutomationRule, Device
from    utils.errors    import RuleNotFound, ValidationError
from    utils.logger    import getLogger

logger = getLogger("RuleStore")


class RuleStore:
    """
    Durable CRUD for automation rules.

    Writes never evaluate anything; the next scheduler tick picks the change
    up. Listeners are told which rule id changed so runtime state can be reset.
    """

    def __init__(self, engine):
        self.engine = engine
        self._lock = threading.Lock()
        self._listeners: List[Callable[[int], None]] = []

    def add_listener(self, callback: Callable[[int], None]):
        self._listeners.append(callback)

    def _notify(self, rule_id: int):
        for callback in self._listeners:
            try:
                callback(rule_id)
            except Exception as e:
                logger.error(f"Rule change listener failed for rule {rule_id}: {e}")

    def list_rules(self) -> List[RuleRead]:
        with get_session(self.engine) as session:
            rules = session.exec(select(AutomationRule).order_by(AutomationRule.id)).all()
            return [RuleRead.model_validate(r) for r in rules]

    def get_rule(self, rule_id: int) -> RuleRead:
        with get_session(self.engine) as session:
            rule = session.get(AutomationRule, rule_id)
            if not rule:
                raise RuleNotFound(rule_id)
            return RuleRead.model_validate(rule)

    def create_rule(self, payload: RuleCreate) -> RuleRead:
        with self._lock, get_session(self.engine) as session:
            self._ensure_device(session, payload.device_id)
            wire = payload.to_wire()
            rule = AutomationRule(
                name        = payload.name,
                description = payload.description,
                device_id   = payload.device_id,
                condition   = wire["condition"],
                action      = wire["action"],
                is_active   = payload.is_active,
            )
            session.add(rule)
            session.commit()
            session.refresh(rule)
            logger.info(f"Automation rule added: {rule.id} ({rule.name}) "
                        f"[{rule.condition.get('type')}] -> device {rule.device_id} {rule.action.get('type')}")
            created = RuleRead.model_validate(rule)
        self._notify(created.id)
        return created

    def update_rule(self, rule_id: int, payload: RuleUpdate) -> RuleRead:
        updates = payload.model_dump(exclude_unset=True, by_alias=True)
        with self._lock, get_session(self.engine) as session:
            rule = session.get(AutomationRule, rule_id)
            if not rule:
                raise RuleNotFound(rule_id)

            merged = RuleRead.model_validate(rule).model_dump(by_alias=True, exclude={"id", "created_at"})
            merged.update({k: v for k, v in updates.items() if v is not None})
            if "deviceId" in updates and "action" not in updates:
                # Retargeting a rule carries its action along
                merged["action"] = {**merged["action"], "deviceId": merged["deviceId"]}
            try:
                validated = RuleCreate.model_validate(merged)
            except SchemaError as e:
                raise ValidationError(f"Invalid automation rule: {e.errors(include_url=False)}")
            self._ensure_device(session, validated.device_id)

            wire = validated.to_wire()
            rule.name        = validated.name
            rule.description = validated.description
            rule.device_id   = validated.device_id
            rule.condition   = wire["condition"]
            rule.action      = wire["action"]
            rule.is_active   = validated.is_active
            session.add(rule)
            session.commit()
            session.refresh(rule)
            logger.info(f"Automation rule updated: {rule_id} {sorted(updates)}")
            updated = RuleRead.model_validate(rule)
        self._notify(rule_id)
        return updated

    def delete_rule(self, rule_id: int) -> None:
        with self._lock, get_session(self.engine) as session:
            rule = session.get(AutomationRule, rule_id)
            if not rule:
                raise RuleNotFound(rule_id)
            session.delete(rule)
            session.commit()
            logger.info(f"Automation rule deleted: {rule_id}")
        self._notify(rule_id)

    def toggle_rule(self, rule_id: int) -> RuleRead:
        with self._lock, get_session(self.engine) as session:
            rule = session.get(AutomationRule, rule_id)
            if not rule:
                raise RuleNotFound(rule_id)
            rule.is_active = not rule.is_active
            session.add(rule)
            session.commit()
            session.refresh(rule)
            logger.info(f"Automation rule {rule_id} {'enabled' if rule.is_active else 'disabled'}")
            toggled = RuleRead.model_validate(rule)
        self._notify(rule_id)
        return toggled

    def _ensure_device(self, session, device_id: int):
        if session.get(Device, device_id) is None:
            raise ValidationError(f"deviceId {device_id} does not reference a registered device")

# server/automation/scheduler.py
"""
Automation Scheduler - edge-triggered rule firing
=================================================
Each tick takes a world snapshot, evaluates every rule against it and fires
a rule's action only on the Idle -> Satisfied transition. Satisfied -> Idle
is silent and re-arms the rule.

Ticks are serialised: a tick that starts while another is still running is
skipped, never queued. One failing rule is logged and skipped without
affecting the others.

Runtime state (last satisfied flag, last fire time) lives only in memory.
On the first tick after start-up, rules that are already satisfied are
recorded as Satisfied without firing unless fire_on_boot is set.
"""

import  asyncio
import  threading
import  time
from    collections     import deque
from    dataclasses     import asdict, dataclass, field
from    datetime        import datetime, timedelta, timezone
from    enum            import Enum
from    typing          import Any, Callable, Deque, Dict, Iterable, List, Optional, Set
from    automation.evaluator import evaluate
from    automation.snapshot import WorldSnapshot
from    config          import constants
from    devices.dispatcher import CommandDispatcher, DeviceAction
from    utils.logger    import getLogger
from    utils.timeutil  import to_aware_utc

logger = getLogger("AutomationScheduler")


class RuleStatus(str, Enum):
    idle      = "Idle"
    satisfied = "Satisfied"


@dataclass
class RuleRuntimeState:
    rule_id:        int
    last_satisfied: bool = False
    last_fired_at:  Optional[datetime] = None
    last_error:     Optional[str] = None

    @property
    def status(self) -> RuleStatus:
        return RuleStatus.satisfied if self.last_satisfied else RuleStatus.idle


@dataclass
class PendingRetry:
    rule_id:        int
    device_id:      int
    action:         DeviceAction
    attempts:       int = 0
    last_error:     Optional[str] = None


@dataclass
class TickReport:
    now:                datetime
    skipped:            bool = False
    evaluated:          int = 0
    satisfied:          List[int] = field(default_factory=list)
    fired:              List[int] = field(default_factory=list)
    failed:             List[int] = field(default_factory=list)
    dispatch_errors:    Dict[int, str] = field(default_factory=dict)
    stale_devices:      List[int] = field(default_factory=list)
    retried:            List[int] = field(default_factory=list)
    duration:           float = 0.0


class AutomationScheduler:

    def __init__(self,
                 rule_source:       Callable[[], Iterable[Any]],
                 snapshot_provider: Callable[[datetime], WorldSnapshot],
                 registry,
                 dispatcher:        CommandDispatcher,
                 staleness:         Optional[timedelta] = None,
                 price_tolerance:   float = 0.0,
                 fire_on_boot:      bool = False,
                 retry_failed:      bool = False,
                 max_retries:       int = constants.AUTOMATION_MAX_RETRIES,
                 trace_size:        int = constants.AUTOMATION_TRACE_SIZE,
                 evaluator:         Callable[..., bool] = evaluate):
        """
        Args:
            rule_source:        Callable returning the current rules (RuleRead-like objects)
            snapshot_provider:  Callable building a WorldSnapshot for a given instant
            registry:           DeviceRegistry, swept for stale devices every tick
            dispatcher:         CommandDispatcher used to actuate fired rules
            price_tolerance:    Tolerance for the price `eq` operator (0 = exact)
            fire_on_boot:       Treat rules satisfied on the first tick as rising edges
            retry_failed:       Retry failed dispatches while the rule stays satisfied
        """
        self._get_rules = rule_source
        self._get_snapshot = snapshot_provider
        self.registry = registry
        self.dispatcher = dispatcher
        self.staleness = staleness
        self.price_tolerance = price_tolerance
        self.fire_on_boot = fire_on_boot
        self.retry_failed = retry_failed
        self.max_retries = max_retries
        self._evaluate = evaluator

        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._states: Dict[int, RuleRuntimeState] = {}
        self._retries: Dict[int, PendingRetry] = {}
        self._booted = False

        self._trace: Deque[Dict[str, Any]] = deque(maxlen=trace_size)
        self._stats = {
            "ticks": 0,
            "skipped_ticks": 0,
            "evaluations": 0,
            "evaluation_errors": 0,
            "fires": 0,
            "dispatch_failures": 0,
            "retries": 0,
        }
        self._last_report: Optional[TickReport] = None

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def state_of(self, rule_id: int) -> Optional[RuleRuntimeState]:
        with self._state_lock:
            return self._states.get(rule_id)

    def states(self) -> List[Dict[str, Any]]:
        with self._state_lock:
            return [
                {**asdict(s), "status": s.status.value, "pending_retry": s.rule_id in self._retries}
                for s in self._states.values()
            ]

    def stats(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["running"] = self._tick_lock.locked()
        stats["tracked_rules"] = len(self._states)
        stats["pending_retries"] = len(self._retries)
        return stats

    def trace(self) -> List[Dict[str, Any]]:
        return list(self._trace)

    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    def forget(self, rule_id: int):
        """Drop runtime state for a rule; it starts Idle on the next tick."""
        with self._state_lock:
            self._states.pop(rule_id, None)
            self._retries.pop(rule_id, None)

    def _add_trace(self, level: str, rule_id, result: str, message: str):
        self._trace.append({
            "timestamp": time.time(),
            "rule_id": rule_id,
            "level": level,
            "result": result,
            "message": message,
        })
        log_msg = f"[RULE {rule_id}] {message}"
        if level == "ERROR":
            logger.error(log_msg)
        elif level == "WARNING":
            logger.warning(log_msg)
        elif level == "INFO":
            logger.info(log_msg)
        else:
            logger.debug(log_msg)

    # =========================================================================
    # TICK
    # =========================================================================

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one evaluation pass, or skip it if another pass is in flight."""
        now = to_aware_utc(now) if now else datetime.now(timezone.utc)
        if not self._tick_lock.acquire(blocking=False):
            self._stats["skipped_ticks"] += 1
            logger.warning(f"Automation tick at {now.isoformat()} skipped: previous tick still running")
            return TickReport(now=now, skipped=True)
        try:
            started = time.monotonic()
            report = self._run_tick(now)
            report.duration = time.monotonic() - started
            self._stats["ticks"] += 1
            self._last_report = report
            return report
        finally:
            self._tick_lock.release()

    def _run_tick(self, now: datetime) -> TickReport:
        report = TickReport(now=now)

        try:
            report.stale_devices = self.registry.mark_stale_if_expired(now, self.staleness)
        except Exception as e:
            logger.error(f"Stale device sweep failed: {e}")

        try:
            snapshot = self._get_snapshot(now)
            rules = list(self._get_rules())
        except Exception as e:
            logger.error(f"Automation tick aborted, no snapshot: {e}")
            return report

        booting = not self._booted
        self._booted = True

        with self._state_lock:
            present = {rule.id for rule in rules}
            for rule_id in set(self._states) - present:
                self._states.pop(rule_id, None)
                self._retries.pop(rule_id, None)

        for rule in rules:
            self._process_rule(rule, snapshot, now, booting, report)

        if report.fired or report.failed or report.dispatch_errors:
            logger.info(f"Tick {now.isoformat()}: evaluated={report.evaluated} fired={report.fired} "
                        f"failed={report.failed} dispatch_errors={sorted(report.dispatch_errors)}")
        return report

    def _process_rule(self, rule, snapshot: WorldSnapshot, now: datetime, booting: bool, report: TickReport):
        try:
            satisfied = bool(self._evaluate(rule, snapshot, self.price_tolerance))
        except Exception as e:
            report.failed.append(rule.id)
            self._stats["evaluation_errors"] += 1
            self._add_trace("ERROR", rule.id, "EVAL_ERROR", f"Evaluation failed: {e}")
            with self._state_lock:
                state = self._states.get(rule.id)
                if state:
                    state.last_error = str(e)
            return

        report.evaluated += 1
        self._stats["evaluations"] += 1
        if satisfied:
            report.satisfied.append(rule.id)

        with self._state_lock:
            state = self._states.get(rule.id)
            if state is None:
                state = RuleRuntimeState(rule_id=rule.id)
                self._states[rule.id] = state
                if booting and satisfied and not self.fire_on_boot:
                    state.last_satisfied = True
                    self._add_trace("INFO", rule.id, "BOOT_SATISFIED",
                                    "Already satisfied at start-up, not firing until it re-arms")
                    return

            rising = satisfied and not state.last_satisfied
            if state.last_satisfied and not satisfied:
                self._add_trace("DEBUG", rule.id, "REARMED", "Condition no longer satisfied, rule re-armed")
            state.last_satisfied = satisfied
            if not satisfied:
                self._retries.pop(rule.id, None)
                return
            pending = self._retries.get(rule.id)

        if rising:
            self._fire(rule, state, now, report)
        elif pending is not None:
            self._retry(pending, state, snapshot, now, report)

    def _fire(self, rule, state: RuleRuntimeState, now: datetime, report: TickReport):
        action = None
        try:
            action = DeviceAction(rule.action.get("type"))
            self.dispatcher.dispatch(rule.device_id, action, now)
        except Exception as e:
            report.dispatch_errors[rule.id] = str(e)
            self._stats["dispatch_failures"] += 1
            self._add_trace("WARNING", rule.id, "DISPATCH_FAILED",
                            f"Rising edge but dispatch to device {rule.device_id} failed: {e}")
            with self._state_lock:
                state.last_error = str(e)
                if self.retry_failed and action is not None:
                    self._retries[rule.id] = PendingRetry(
                        rule_id     = rule.id,
                        device_id   = rule.device_id,
                        action      = action,
                        last_error  = str(e),
                    )
            return

        with self._state_lock:
            state.last_fired_at = now
            state.last_error = None
        report.fired.append(rule.id)
        self._stats["fires"] += 1
        self._add_trace("INFO", rule.id, "FIRED", f"{action.value} -> device {rule.device_id}")

    def _retry(self, pending: PendingRetry, state: RuleRuntimeState, snapshot: WorldSnapshot,
               now: datetime, report: TickReport):
        device = snapshot.device(pending.device_id)
        if device is not None and not device.online:
            return                                              # wait for telemetry, attempt not spent

        with self._state_lock:
            pending.attempts += 1
        self._stats["retries"] += 1
        try:
            self.dispatcher.dispatch(pending.device_id, pending.action, now)
        except Exception as e:
            report.dispatch_errors[pending.rule_id] = str(e)
            with self._state_lock:
                pending.last_error = str(e)
                state.last_error = str(e)
                exhausted = pending.attempts >= self.max_retries
                if exhausted:
                    self._retries.pop(pending.rule_id, None)
            if exhausted:
                self._add_trace("ERROR", pending.rule_id, "RETRY_EXHAUSTED",
                                f"Giving up after {pending.attempts} retries: {e}")
            return

        with self._state_lock:
            self._retries.pop(pending.rule_id, None)
            state.last_fired_at = now
            state.last_error = None
        report.retried.append(pending.rule_id)
        self._stats["fires"] += 1
        self._add_trace("INFO", pending.rule_id, "RETRY_FIRED",
                        f"{pending.action.value} -> device {pending.device_id} on retry {pending.attempts}")

    # =========================================================================
    # TIMER LOOP
    # =========================================================================

    async def run(self, interval: float, stop_event: asyncio.Event):
        """
        Fire a tick every `interval` seconds until `stop_event` is set.

        Ticks run in worker threads so telemetry handling on the event loop
        never waits on them. A tick still running when the timer fires again
        makes the new tick a no-op.
        """
        logger.info(f"Automation scheduler started, tick every {interval}s")
        in_flight: Set[asyncio.Task] = set()
        while not stop_event.is_set():
            task = asyncio.create_task(asyncio.to_thread(self.tick))
            in_flight.add(task)
            task.add_done_callback(self._tick_done)
            task.add_done_callback(in_flight.discard)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Automation scheduler stopped")

    @staticmethod
    def _tick_done(task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Automation tick crashed: {error}")

"""
Run state machine.

    IDLE --start--> STARTING --(start page fetched)--> PLAYING
    PLAYING --tick--> LOADING_STEP --> PLAYING | PAUSED | SUCCESS | FAILED
    PLAYING --pause--> PAUSED --resume--> PLAYING
    any --abort / wall-clock expiry--> IDLE

One coroutine at a time drives the run (`play`), and a step is always finished or
discarded before the next one starts. Pause and abort are honored between steps;
only the wall-clock timer interrupts a step that is in flight.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from wikirunner.config import PACING_DELAY_S, RunConfig
from wikirunner.errors import (
    BudgetExceededError,
    FetchError,
    InvalidSolverResponseError,
    InvalidTransitionError,
    NavigationError,
)
from wikirunner.models import Node, RunStatus, Step, canonical_title
from wikirunner.solvers import Solver, build_solver

logger = logging.getLogger(__name__)


class GraphSource(Protocol):
    async def fetch_node(self, title: str) -> Node:
        ...

    async def fetch_random_title(self) -> str:
        ...


@dataclass
class RunState:
    start_title: str
    target: str
    current: Node
    solver: Solver
    step_budget: int
    started_at: float
    history: List[Step] = field(default_factory=list)
    failure_reason: Optional[str] = None

    def path(self) -> List[str]:
        return [self.start_title] + [step.title for step in self.history]


@dataclass(frozen=True)
class RunResult:
    status: RunStatus
    path: Tuple[str, ...]
    steps: Tuple[Step, ...]
    failure_reason: Optional[str]
    expired: bool

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCESS

    @property
    def hops(self) -> int:
        return len(self.steps)


class Navigator:
    def __init__(
        self,
        source: GraphSource,
        solver_factory: Callable[[RunConfig], Solver] = build_solver,
        pacing_delay: float = PACING_DELAY_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.solver_factory = solver_factory
        self.pacing_delay = pacing_delay
        self.clock = clock

        self.expired = False
        self.last_error: Optional[NavigationError] = None

        self._status = RunStatus.IDLE
        self._state: Optional[RunState] = None
        self._generation = 0
        self._pause_requested = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._driver: Optional[asyncio.Task] = None
        self._timer_cancelled: Optional[asyncio.Task] = None

    # -----------------------------
    # Read-only views
    # -----------------------------
    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    @property
    def history(self) -> Tuple[Step, ...]:
        return tuple(self._state.history) if self._state else ()

    @property
    def driving(self) -> bool:
        return self._driver is not None and not self._driver.done()

    # -----------------------------
    # Commands
    # -----------------------------
    async def start(self, config: RunConfig) -> RunStatus:
        """
        Begin a new run: build the solver, arm the wall-clock timer and fetch the start
        page. A failure here leaves the navigator IDLE with no run state and re-raises.
        """
        if self._status not in (RunStatus.IDLE, RunStatus.SUCCESS, RunStatus.FAILED):
            raise InvalidTransitionError(f"Cannot start a run while {self._status.value}; abort it first.")

        self._reset()
        self.expired = False
        self.last_error = None

        try:
            solver = self.solver_factory(config)
        except NavigationError as e:
            self.last_error = e
            raise

        generation = self._generation
        self._status = RunStatus.STARTING
        self._arm_timer(config.wall_clock_budget, generation)

        try:
            start_title = config.start or await self.source.fetch_random_title()
            node = await self.source.fetch_node(start_title)
        except FetchError as e:
            if generation == self._generation:
                self._reset()
            self.last_error = e
            logger.warning("Failed to start: %s", e)
            raise
        except Exception as e:
            if generation == self._generation:
                self._reset()
            logger.exception("Graph source crashed while loading the start page")
            self.last_error = FetchError(f"Could not load the start page: {e}")
            raise self.last_error from e

        if generation != self._generation:
            # aborted or timed out while the start page was loading
            return self._status

        self._state = RunState(
            start_title=node.title,
            target=config.target,
            current=node,
            solver=solver,
            step_budget=config.step_budget,
            started_at=self.clock(),
        )
        self._status = RunStatus.PAUSED if self._pause_requested else RunStatus.PLAYING
        self._pause_requested = False

        logger.info("Run started: '%s' -> '%s' with %s (budget %d steps, %.0fs)",
                    node.title, config.target, solver.kind.value, config.step_budget, config.wall_clock_budget)
        return self._status

    async def tick(self) -> RunStatus:
        """Play one step. Does nothing unless the run is PLAYING."""
        if self._status is not RunStatus.PLAYING:
            return self._status

        state = self._state
        generation = self._generation
        self._status = RunStatus.LOADING_STEP

        current = state.current
        target_key = canonical_title(state.target)

        if canonical_title(current.title) == target_key:
            return self._succeed()

        if len(state.history) >= state.step_budget:
            return self._fail(BudgetExceededError(
                f"Maximum of {state.step_budget} steps reached without finding the target."
            ))

        visited = tuple(state.path()[:-1])
        started = time.perf_counter()
        try:
            move = await state.solver.choose(current, state.target, visited)
        except NavigationError as e:
            if self._stale(generation):
                return self._status
            return self._fail(e)
        except Exception as e:
            if self._stale(generation):
                return self._status
            logger.exception("Solver %s crashed on '%s'", state.solver.kind.value, current.title)
            return self._fail(e, f"Solver error: {e}")
        duration = time.perf_counter() - started

        if self._stale(generation):
            logger.info("Discarding solver result for an abandoned run")
            return self._status

        if move.link not in current.links:
            return self._fail(InvalidSolverResponseError(
                f"Solver chose '{move.link}', which is not a link on '{current.title}'."
            ))

        logger.info("Step %d: '%s' -> '%s' (%.0f ms)",
                    len(state.history) + 1, current.title, move.link, duration * 1000)

        if self.pacing_delay > 0:
            await asyncio.sleep(self.pacing_delay)
            if self._stale(generation):
                return self._status

        try:
            destination = await self.source.fetch_node(move.link)
        except FetchError as e:
            if self._stale(generation):
                return self._status
            return self._fail(e)
        except Exception as e:
            if self._stale(generation):
                return self._status
            logger.exception("Graph source crashed loading '%s'", move.link)
            return self._fail(FetchError(f"Could not load '{move.link}': {e}"))

        if self._stale(generation):
            logger.info("Discarding step result for an abandoned run")
            return self._status

        state.history.append(Step(
            from_title=current.title,
            link=move.link,
            title=destination.title,
            rationale=move.rationale,
            timestamp=time.time(),
            duration=duration,
            solver=state.solver.kind,
        ))
        state.current = destination

        if canonical_title(move.link) == target_key or canonical_title(destination.title) == target_key:
            return self._succeed()

        if self._pause_requested:
            self._pause_requested = False
            self._status = RunStatus.PAUSED
        else:
            self._status = RunStatus.PLAYING
        return self._status

    async def play(self) -> RunStatus:
        """
        Scheduling loop: keep ticking while PLAYING. Returns once the run pauses,
        finishes, or is reset by abort or the wall-clock timer.
        """
        if self.driving:
            raise InvalidTransitionError("This run is already being played.")

        task = asyncio.current_task()
        self._driver = task
        try:
            while self._status is RunStatus.PLAYING:
                await self.tick()
                # let pause/abort requests from other tasks land between steps
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            if self._timer_cancelled is not task:
                raise
            self._timer_cancelled = None
            task.uncancel()
        finally:
            if self._driver is task:
                self._driver = None
        return self._status

    async def run(self, config: RunConfig) -> RunResult:
        await self.start(config)
        await self.play()
        return self.result()

    def pause(self) -> RunStatus:
        if self._status is RunStatus.PLAYING:
            self._status = RunStatus.PAUSED
            logger.info("Run paused")
        elif self._status in (RunStatus.STARTING, RunStatus.LOADING_STEP):
            # the in-flight step still commits; only the next tick is withheld
            self._pause_requested = True
        elif self._status is not RunStatus.PAUSED:
            raise InvalidTransitionError(f"Cannot pause a run that is {self._status.value}.")
        return self._status

    def resume(self) -> RunStatus:
        if self._status is RunStatus.PAUSED:
            self._status = RunStatus.PLAYING
            logger.info("Run resumed")
        elif self._status in (RunStatus.STARTING, RunStatus.LOADING_STEP):
            self._pause_requested = False
        elif self._status is not RunStatus.PLAYING:
            raise InvalidTransitionError(f"Cannot resume a run that is {self._status.value}.")
        return self._status

    def abort(self) -> RunStatus:
        """Drop the run entirely. A step still in flight is discarded when it returns."""
        if self._status is not RunStatus.IDLE:
            logger.info("Run aborted while %s", self._status.value)
        self._reset()
        return self._status

    # -----------------------------
    # Results
    # -----------------------------
    def result(self) -> RunResult:
        state = self._state
        if state is None:
            reason = "Stopped by wall-clock budget." if self.expired else None
            return RunResult(self._status, (), (), reason, self.expired)
        return RunResult(
            status=self._status,
            path=tuple(state.path()),
            steps=tuple(state.history),
            failure_reason=state.failure_reason,
            expired=self.expired,
        )

    def snapshot(self) -> Dict[str, Any]:
        state = self._state
        payload: Dict[str, Any] = {
            "status": self._status.value,
            "done": self._status.terminal,
            "success": self._status is RunStatus.SUCCESS,
            "expired": self.expired,
            "failure_reason": None,
        }
        if state is None:
            if self.expired:
                payload["failure_reason"] = "Stopped by wall-clock budget."
            return payload

        path = state.path()
        payload.update({
            "failure_reason": state.failure_reason,
            "solver": state.solver.kind.value,
            "start_title": state.start_title,
            "target": state.target,
            "current_title": state.current.title,
            "path": path,
            "chain": " -> ".join(path),
            "hops": len(state.history),
            "step_budget": state.step_budget,
            "elapsed_s": round(self.clock() - state.started_at, 3),
            "steps": [step.to_dict() for step in state.history],
        })
        return payload

    # -----------------------------
    # Internals
    # -----------------------------
    def _stale(self, generation: int) -> bool:
        return generation != self._generation

    def _succeed(self) -> RunStatus:
        self._disarm_timer()
        self._pause_requested = False
        self._status = RunStatus.SUCCESS
        logger.info("Reached '%s' in %d hops", self._state.target, len(self._state.history))
        return self._status

    def _fail(self, error: Exception, reason: Optional[str] = None) -> RunStatus:
        self._disarm_timer()
        self._pause_requested = False
        self._state.failure_reason = reason or str(error)
        self.last_error = error if isinstance(error, NavigationError) else None
        self._status = RunStatus.FAILED
        logger.info("Run failed: %s", self._state.failure_reason)
        return self._status

    def _reset(self) -> None:
        self._generation += 1
        self._disarm_timer()
        self._state = None
        self._pause_requested = False
        self._status = RunStatus.IDLE

    def _arm_timer(self, seconds: float, generation: int) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self._on_deadline, generation)

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_deadline(self, generation: int) -> None:
        if self._stale(generation):
            return

        logger.warning("Wall-clock budget exhausted while %s; resetting run", self._status.value)
        driver = self._driver
        self._timer = None
        self._reset()
        self.expired = True

        if driver is not None and not driver.done():
            self._timer_cancelled = driver
            driver.cancel()

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .config_types import SetupConfig, merge_config
from .errors import InvalidStageError, SetupError
from .lock import RunLock
from .progress import ConfigCache, MemoryConfigCache, ProgressStore
from .runner import CommandRunner
from .stages import STAGES, Stage, StageContext, StageRecord

logger = logging.getLogger(__name__)


def resolve_start_stage(
        forced_stage: int | None,
        persisted_stage: int,
        confirm_resume: Callable[[int], bool],
        total: int,
) -> int:
    """Return the number of stages to treat as already complete.

    A forced stage ``s`` yields ``s - 1``. A persisted stage strictly between
    0 and ``total`` is only honoured when ``confirm_resume`` accepts it.
    """
    if forced_stage is not None:
        if isinstance(forced_stage, bool) or not isinstance(forced_stage, int):
            raise InvalidStageError(forced_stage, total)
        if forced_stage < 1 or forced_stage > total:
            raise InvalidStageError(forced_stage, total)
        return forced_stage - 1
    if 0 < persisted_stage < total:
        if confirm_resume(persisted_stage):
            return persisted_stage
        return 0
    return 0


def parse_stage_number(raw: str | int | None, total: int) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, int) and not isinstance(raw, bool):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            value = int(text)
        except ValueError:
            raise InvalidStageError(text, total)
    if value < 1 or value > total:
        raise InvalidStageError(value, total)
    return value


@dataclass
class RunResult:
    exit_code: int
    start_stage: int
    completed: list[int] = field(default_factory=list)
    failed_stage: StageRecord | None = None
    error: Exception | None = None
    config: SetupConfig | None = None
    public_ip: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def message(self) -> str:
        if self.failed_stage is None:
            return "Setup completed successfully."
        return f"Stage {self.failed_stage.ordinal} ({self.failed_stage.name}) failed: {self.error}"


def default_context(cfg: SetupConfig) -> StageContext:
    return StageContext(config=cfg, runner=CommandRunner(sudo_user=cfg.sudo_user))


class Sequencer:
    """Runs the ordered stages with a persisted checkpoint and a run lock."""

    def __init__(
            self,
            *,
            store: ProgressStore,
            lock: RunLock,
            confirm_resume: Callable[[int], bool],
            stages: Sequence[Stage] = STAGES,
            config_cache: ConfigCache | None = None,
            make_context: Callable[[SetupConfig], StageContext] = default_context,
            on_stage_start: Callable[[StageRecord], None] | None = None,
            on_stage_done: Callable[[StageRecord], None] | None = None,
    ):
        ordinals = [stage.ordinal for stage in stages]
        if ordinals != list(range(1, len(stages) + 1)):
            raise ValueError(f"stage ordinals must be 1..N in order, got {ordinals}")
        self.stages = list(stages)
        self.store = store
        self.lock = lock
        self.confirm_resume = confirm_resume
        self.config_cache = config_cache or MemoryConfigCache()
        self.make_context = make_context
        self.on_stage_start = on_stage_start
        self.on_stage_done = on_stage_done

    @property
    def total(self) -> int:
        return len(self.stages)

    def run(
            self,
            config: SetupConfig,
            *,
            forced_start_stage: int | None = None,
            reset_requested: bool = False,
            complete_config: Callable[[SetupConfig, int], SetupConfig] | None = None,
    ) -> RunResult:
        """Execute stages after the resolved start point.

        ``complete_config`` receives the merged configuration and the number
        of stages already satisfied, and returns the configuration to run
        with (used to prompt only for inputs the remaining stages need).
        Lock and stage-number errors are raised; a stage failure is reported
        through the returned ``RunResult``.
        """
        self.lock.try_acquire()
        try:
            if reset_requested:
                logger.info("resetting setup progress")
                self.store.clear()
                self.config_cache.clear()

            persisted = self.store.load()
            config = merge_config(config, self.config_cache.load())
            done = resolve_start_stage(forced_start_stage, persisted, self.confirm_resume, self.total)
            if done < persisted:
                # Stages after the new start point are no longer known to be done.
                if done == 0:
                    self.store.clear()
                else:
                    self.store.save(done)
            if complete_config is not None:
                config = complete_config(config, done)
            self.config_cache.save(config)
            return self._execute(config, done)
        finally:
            self.lock.release()

    def _execute(self, config: SetupConfig, done: int) -> RunResult:
        ctx = self.make_context(config)
        result = RunResult(exit_code=0, start_stage=done + 1, config=config)
        for stage in self.stages[done:]:
            if self.on_stage_start:
                self.on_stage_start(stage.record)
            logger.debug("stage %d (%s) starting", stage.ordinal, stage.name)
            try:
                stage.run(ctx)
            except (SetupError, OSError) as exc:
                logger.debug("stage %d (%s) failed: %s", stage.ordinal, stage.name, exc)
                result.exit_code = 1
                result.failed_stage = stage.record
                result.error = exc
                result.public_ip = ctx.public_ip
                return result
            self.store.save(stage.ordinal)
            result.completed.append(stage.ordinal)
            if self.on_stage_done:
                self.on_stage_done(stage.record)

        self.store.clear()
        self.config_cache.clear()
        result.public_ip = ctx.public_ip
        return result

from .config_types import SetupConfig
from .errors import InvalidStageError, LockHeldError, SetupError
from .sequencer import RunResult, Sequencer, resolve_start_stage
from .stages import STAGES, StageContext, StageRecord

__all__ = [
    "SetupConfig",
    "SetupError",
    "InvalidStageError",
    "LockHeldError",
    "RunResult",
    "Sequencer",
    "resolve_start_stage",
    "STAGES",
    "StageContext",
    "StageRecord",
]

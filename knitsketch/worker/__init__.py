from .iterative import TRANSFER_DELTA, UPDATE_DELTA, IterativeWorker, Stage
from .stages import STAGE_NAMES, PipelinePlan, stages_from_message
from .transport import WorkerThread

__all__ = [
    "TRANSFER_DELTA",
    "UPDATE_DELTA",
    "IterativeWorker",
    "Stage",
    "STAGE_NAMES",
    "PipelinePlan",
    "stages_from_message",
    "WorkerThread",
]

from maestro.workers.stream import StreamParser, classify_record, describe_tool
from maestro.workers.supervisor import ProcessSupervisor, RunOutcome

__all__ = [
    "ProcessSupervisor",
    "RunOutcome",
    "StreamParser",
    "classify_record",
    "describe_tool",
]

from maestro.specialists.advisor import Advisor
from maestro.specialists.base import Generated, SpecialistAgent
from maestro.specialists.planner import Planner
from maestro.specialists.requirements import FollowUpResult, RequirementsAnalyst

__all__ = [
    "Advisor",
    "FollowUpResult",
    "Generated",
    "Planner",
    "RequirementsAnalyst",
    "SpecialistAgent",
]

"""
TaskPilot: Autonomous Task Board Orchestration

Coordinates autonomous work on a task board:
- Requirement analysis into AI-generated tasks
- Task stage tracking, timeout detection and bounded recursive breakdown
- Timed agent task selection per project
- Automated test-and-merge of tasks sitting in review

Distribution: Available as both Python library and CLI
"""

__version__ = "0.1.0"
__all__ = [
    "__version__",
]

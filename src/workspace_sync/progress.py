import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

RUNNING = "running"
SUCCESS = "success"
ERROR = "error"
WARNING = "warning"
INFO = "info"


@dataclass
class ProgressStep:
    """A single entry in an operation's progress log.

    Attributes:
        label (str): The step name, e.g. 'Testing repository connection'.
        status (str): One of running, success, error, warning or info.
        detail (str | None): Optional human-readable detail.
        timestamp (float): Seconds since the epoch when the entry was recorded.
    """

    label: str
    status: str
    detail: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressLog:
    """Append-only record of the steps an operation went through.

    Operations return the log (or its summary) alongside their result. A
    listener may be attached to stream entries as they are appended.
    """

    def __init__(
        self, listener: Callable[[ProgressStep, list[ProgressStep]], None] | None = None
    ):
        self._steps: list[ProgressStep] = []
        self._listener = listener

    def report(self, label: str, status: str = RUNNING, detail: str | None = None) -> None:
        step = ProgressStep(label, status, detail)
        self._steps.append(step)
        if self._listener:
            self._listener(step, self.summary())

    def success(self, label: str, detail: str | None = None) -> None:
        self.report(label, SUCCESS, detail)

    def error(self, label: str, detail: str | None = None) -> None:
        self.report(label, ERROR, detail)

    def warning(self, label: str, detail: str | None = None) -> None:
        self.report(label, WARNING, detail)

    def info(self, label: str, detail: str | None = None) -> None:
        self.report(label, INFO, detail)

    @property
    def steps(self) -> list[ProgressStep]:
        return list(self._steps)

    def last_error(self) -> ProgressStep | None:
        errors = [s for s in self._steps if s.status == ERROR]
        return errors[-1] if errors else None

    def summary(self) -> list[ProgressStep]:
        """Collapses the log to one entry per label.

        The first entry for a label fixes its position; any later non-running
        entry replaces it, so each label shows its final outcome.

        Returns:
            list[ProgressStep]: One step per distinct label, in first-seen order.
        """
        grouped: dict[str, ProgressStep] = {}
        for step in self._steps:
            if step.label not in grouped or step.status != RUNNING:
                grouped[step.label] = step
        return list(grouped.values())

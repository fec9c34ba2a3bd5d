from abc import ABC, abstractmethod


class TelemetryAdapter(ABC):
    @abstractmethod
    def ping(self) -> None:
        """Liveness notification while a measurement runs."""

    @abstractmethod
    def push_log(self, data: bytes) -> None:
        """Send the log lines accumulated since the previous push."""

    @abstractmethod
    def upload(self, path: str) -> None:
        """Upload an archive file, named by its basename."""

    @abstractmethod
    def shutdown(self, success: bool) -> None:
        """Report the terminal sweep status and ask the controller to shut down."""

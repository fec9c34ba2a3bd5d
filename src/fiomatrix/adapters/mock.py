from .base import TelemetryAdapter


class MockTelemetryAdapter(TelemetryAdapter):
    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []
        self.logs: list[bytes] = []
        self.fail_ping = False

    def ping(self) -> None:
        self.calls.append(("ping", (), {}))
        if self.fail_ping:
            raise RuntimeError("ping refused")

    def push_log(self, data: bytes) -> None:
        self.calls.append(("push_log", (len(data),), {}))
        self.logs.append(data)

    def upload(self, path: str) -> None:
        self.calls.append(("upload", (path,), {}))

    def shutdown(self, success: bool) -> None:
        self.calls.append(("shutdown", (success,), {}))

    def call_names(self) -> list[str]:
        return [name for name, _, _ in self.calls]

import pytest

import chrome_update as cu


class FakeInspector:
    """In-memory stand-in for WindowsInspector that records every call."""

    def __init__(self, app=None, tool=None, updater=None, running=False, app_after=None, fail=()):
        self.app = app
        self.tool = tool
        self.updater = updater
        self.running = running
        self.app_after = app_after
        self.fail = set(fail)
        self.calls = []
        self._app_lookups = 0

    def _maybe_fail(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise cu.ProbeError(f"access denied in {name}")

    def find_installed_app(self):
        self._maybe_fail("find_installed_app")
        self._app_lookups += 1
        if self._app_lookups > 1 and self.app_after is not None:
            return self.app_after
        return self.app

    def find_update_tool(self):
        self._maybe_fail("find_update_tool")
        return self.tool

    def find_vendor_updater(self):
        self._maybe_fail("find_vendor_updater")
        return self.updater

    def is_app_running(self):
        self.calls.append("is_app_running")
        return self.running


class FakeSource:
    def __init__(self, result, name="fake source"):
        self.result = result
        self.name = name
        self.calls = 0

    def get_latest_version(self):
        self.calls += 1
        return self.result


class FakeExecutor:
    def __init__(self, tool, code=0, name="fake executor", error=None):
        self.tool = tool
        self.code = code
        self.name = name
        self.error = error
        self.calls = 0

    @property
    def available(self):
        return self.tool is not None

    def execute(self):
        self.calls += 1
        if self.error:
            raise cu.ExecutionError(self.error)
        return self.code


class Harness:
    """Builds an UpdateResolver from fakes and keeps handles to them."""

    def __init__(
        self,
        inspector,
        primary="120.0.6099.129",
        secondary=cu.Unavailable("feed down"),
        primary_code=0,
        secondary_code=0,
        policy=cu.UnknownVersionPolicy.CONSERVATIVE,
    ):
        self.inspector = inspector
        self.primary_source = FakeSource(primary, "winget")
        self.secondary_source = FakeSource(secondary, "version feed")
        self.primary_code = primary_code
        self.secondary_code = secondary_code
        self.primary_executor = None
        self.secondary_executor = None
        self.source_factory_calls = []
        self.resolver = cu.UpdateResolver(
            inspector=inspector,
            primary_source=self._make_primary_source,
            secondary_source=self.secondary_source,
            primary_executor=self._make_primary_executor,
            secondary_executor=self._make_secondary_executor,
            policy=policy,
        )

    def _make_primary_source(self, tool):
        self.source_factory_calls.append(tool)
        return self.primary_source

    def _make_primary_executor(self, tool):
        self.primary_executor = FakeExecutor(tool, self.primary_code, "winget upgrade")
        return self.primary_executor

    def _make_secondary_executor(self, updater):
        self.secondary_executor = FakeExecutor(updater, self.secondary_code, "Google Update")
        return self.secondary_executor


@pytest.fixture
def chrome():
    return cu.InstalledApp(
        r"C:\Program Files\Google\Chrome\Application\chrome.exe", "118.0.5993.70", "install path"
    )


@pytest.fixture
def winget():
    return cu.ToolLocation(r"C:\Users\ops\AppData\Local\Microsoft\WindowsApps\winget.exe", "PATH")


@pytest.fixture
def google_update():
    return cu.ToolLocation(r"C:\Program Files (x86)\Google\Update\GoogleUpdate.exe", "install directory")


@pytest.fixture
def harness():
    return Harness


@pytest.fixture
def make_inspector():
    return FakeInspector


@pytest.fixture
def make_executor():
    return FakeExecutor

import chrome_update as cu
from chrome_update import UpdateOutcome


def test_not_installed_short_circuits(harness, make_inspector, winget):
    inspector = make_inspector(app=None, tool=winget)
    h = harness(inspector)

    for summary in (h.resolver.detect(), h.resolver.remediate()):
        assert summary.outcome is UpdateOutcome.NOT_INSTALLED
        assert summary.exit_code == cu.EXIT_NOTICE
        assert "Google Chrome is not installed" in summary.facts

    assert inspector.calls == ["find_installed_app", "find_installed_app"]
    assert h.source_factory_calls == []
    assert h.primary_source.calls == 0
    assert h.secondary_source.calls == 0
    assert h.primary_executor is None
    assert h.secondary_executor is None


def test_up_to_date_when_equal(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget), primary="118.0.5993.70")

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UP_TO_DATE
    assert summary.exit_code == cu.EXIT_OK
    assert h.primary_executor is None
    assert h.secondary_executor is None


def test_up_to_date_when_newer_than_latest(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget), primary="117.0.1.1")

    assert h.resolver.detect().outcome is UpdateOutcome.UP_TO_DATE


def test_detect_reports_needs_update_without_running_tools(harness, make_inspector, chrome, winget):
    inspector = make_inspector(app=chrome, tool=winget)
    h = harness(inspector)

    summary = h.resolver.detect()

    assert summary.outcome is UpdateOutcome.NEEDS_UPDATE
    assert summary.exit_code == cu.EXIT_WARNING
    assert h.primary_executor is None
    assert "find_vendor_updater" not in inspector.calls
    assert h.source_factory_calls == [winget]


def test_secondary_source_only_after_primary_unavailable(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget), primary="120.0.6099.129", secondary="121.0.0.0")
    h.resolver.detect()
    assert h.primary_source.calls == 1
    assert h.secondary_source.calls == 0

    h = harness(
        make_inspector(app=chrome, tool=winget),
        primary=cu.Unavailable("no version found in winget search output"),
        secondary="121.0.0.0",
    )
    summary = h.resolver.detect()
    assert h.primary_source.calls == 1
    assert h.secondary_source.calls == 1
    assert summary.outcome is UpdateOutcome.NEEDS_UPDATE
    assert "latest version 121.0.0.0 from version feed" in summary.facts


def test_both_sources_unavailable_is_version_unknown(harness, make_inspector, chrome, winget):
    h = harness(
        make_inspector(app=chrome, tool=winget),
        primary=cu.Unavailable("winget search timed out after 60s"),
        secondary=cu.Unavailable("version feed unreachable: timed out", environment=True),
    )

    for summary in (h.resolver.detect(), h.resolver.remediate()):
        assert summary.outcome is UpdateOutcome.VERSION_UNKNOWN
        assert summary.exit_code == cu.EXIT_NOTICE
        assert "latest version unknown" in summary.facts
        assert any("environment error" in fact for fact in summary.facts)
    assert h.primary_executor is None


def test_assume_outdated_policy_uses_sentinel(harness, make_inspector, chrome, winget):
    h = harness(
        make_inspector(app=chrome, tool=winget),
        primary=cu.Unavailable("winget not found"),
        secondary=cu.Unavailable("feed down"),
        policy=cu.UnknownVersionPolicy.ASSUME_OUTDATED,
    )

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert h.primary_executor.calls == 1
    assert any(cu.DEFAULT_SENTINEL_VERSION in fact for fact in summary.facts)


def test_successful_winget_upgrade(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget), primary="120.0.6099.129", primary_code=0)

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert summary.exit_code == cu.EXIT_OK
    line = summary.render()
    assert "118.0.5993.70" in line
    assert "120.0.6099.129" in line
    assert "successful" in line
    assert h.secondary_executor is None


def test_mismatch_falls_back_to_google_update(harness, make_inspector, chrome, winget, google_update):
    inspector = make_inspector(app=chrome, tool=winget, updater=google_update)
    h = harness(inspector, primary_code=cu.INSTALLER_TECHNOLOGY_MISMATCH, secondary_code=0)

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert h.primary_executor.calls == 1
    assert h.secondary_executor.calls == 1
    assert f"winget upgrade exited with code {cu.INSTALLER_TECHNOLOGY_MISMATCH}" in summary.facts
    assert "Google Update exited with code 0" in summary.facts


def test_mismatch_reported_as_unsigned_still_falls_back(harness, make_inspector, chrome, winget, google_update):
    h = harness(
        make_inspector(app=chrome, tool=winget, updater=google_update),
        primary_code=2316632107,
    )

    assert h.resolver.remediate().outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert h.secondary_executor.calls == 1


def test_mismatch_without_fallback_fails(harness, make_inspector, chrome, winget):
    h = harness(
        make_inspector(app=chrome, tool=winget, updater=None),
        primary_code=cu.INSTALLER_TECHNOLOGY_MISMATCH,
    )

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_FAILED
    assert summary.exit_code == cu.EXIT_WARNING
    assert h.secondary_executor.calls == 0


def test_mismatch_then_fallback_failure(harness, make_inspector, chrome, winget, google_update):
    h = harness(
        make_inspector(app=chrome, tool=winget, updater=google_update),
        primary_code=cu.INSTALLER_TECHNOLOGY_MISMATCH,
        secondary_code=3,
    )

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_FAILED
    assert "Google Update exited with code 3" in summary.facts


def test_other_failure_never_invokes_secondary(harness, make_inspector, chrome, winget, google_update):
    inspector = make_inspector(app=chrome, tool=winget, updater=google_update)
    h = harness(inspector, primary_code=1603)

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_FAILED
    assert "winget upgrade exited with code 1603" in summary.facts
    assert h.secondary_executor is None
    assert "find_vendor_updater" not in inspector.calls


def test_missing_winget_uses_google_update_only(harness, make_inspector, chrome, google_update):
    h = harness(make_inspector(app=chrome, tool=None, updater=google_update))

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert h.primary_executor.calls == 0
    assert h.secondary_executor.calls == 1
    assert "winget not found" in summary.facts


def test_no_tools_at_all_is_tool_missing_failure(harness, make_inspector, chrome):
    h = harness(make_inspector(app=chrome, tool=None, updater=None))

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_FAILED
    assert summary.cause is UpdateOutcome.TOOL_MISSING
    assert summary.exit_code == cu.EXIT_NOTICE
    assert "no update tool available" in summary.facts


def test_executor_launch_failure_is_update_failed(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget))
    build_primary = h._make_primary_executor

    def broken(tool):
        executor = build_primary(tool)
        executor.error = "access is denied"
        return executor

    h.resolver.primary_executor = broken

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_FAILED
    assert any("could not run" in fact for fact in summary.facts)


def test_environment_errors_degrade_to_not_found(harness, make_inspector, chrome, google_update):
    inspector = make_inspector(app=chrome, tool=None, updater=google_update, fail={"find_update_tool"})
    h = harness(inspector)

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.UPDATE_SUCCEEDED
    assert any(fact.startswith("environment error locating winget") for fact in summary.facts)
    assert h.source_factory_calls == [None]


def test_environment_error_finding_app_is_not_installed(harness, make_inspector):
    h = harness(make_inspector(fail={"find_installed_app"}))

    summary = h.resolver.detect()

    assert summary.outcome is UpdateOutcome.NOT_INSTALLED
    assert summary.facts[0].startswith("environment error locating Google Chrome")


def test_unparsable_installed_version_is_version_unknown(harness, make_inspector, winget):
    app = cu.InstalledApp("chrome.exe", "120.0 beta", "uninstall registry")
    h = harness(make_inspector(app=app, tool=winget))

    summary = h.resolver.remediate()

    assert summary.outcome is UpdateOutcome.VERSION_UNKNOWN
    assert h.primary_executor is None


def test_running_app_and_post_update_version_recorded(harness, make_inspector, chrome, winget):
    updated = cu.InstalledApp(chrome.install_path, "120.0.6099.129", "install path")
    h = harness(make_inspector(app=chrome, tool=winget, running=True, app_after=updated))

    summary = h.resolver.remediate()

    assert "Google Chrome is running, the update applies after restart" in summary.facts
    assert summary.facts[-1] == "installed version after update 120.0.6099.129"


def test_fact_order_is_deterministic(harness, make_inspector, chrome, winget):
    h = harness(make_inspector(app=chrome, tool=winget))

    first = h.resolver.remediate().facts
    second = h.resolver.remediate().facts

    assert first == second
    assert first[:4] == (
        f"installed version 118.0.5993.70 ({chrome.install_path})",
        f"winget at {winget.executable_path}",
        "latest version 120.0.6099.129 from winget",
        "update available 118.0.5993.70 -> 120.0.6099.129",
    )


def test_run_summary_rendering():
    summary = cu.RunSummary("detect", UpdateOutcome.UP_TO_DATE, ("installed version 1.0", "up to date"))
    assert summary.render() == "[UpToDate] installed version 1.0; up to date."
    assert cu.RunSummary("detect", UpdateOutcome.NOT_INSTALLED).render() == "[NotInstalled]"

    data = cu.RunSummary(
        "remediate", UpdateOutcome.UPDATE_FAILED, ("x",), UpdateOutcome.TOOL_MISSING
    ).to_dict()
    assert data["outcome"] == "UpdateFailed"
    assert data["cause"] == "ToolMissing"
    assert data["exit_code"] == cu.EXIT_NOTICE
    assert data["facts"] == ["x"]

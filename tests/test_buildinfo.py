from cpushaper import buildinfo


def test_current_returns_injected_metadata(monkeypatch):
    monkeypatch.setattr(buildinfo, "VERSION", "1.2.3-test")
    monkeypatch.setattr(buildinfo, "GIT_COMMIT", "abcdef123456")
    monkeypatch.setattr(buildinfo, "BUILD_DATE", "2024-05-01T00:00:00Z")

    info = buildinfo.current()

    assert info.version == "1.2.3-test"
    assert info.git_commit == "abcdef123456"
    assert info.build_date == "2024-05-01T00:00:00Z"


def test_current_defaults_describe_development_build():
    assert buildinfo.current() == buildinfo.Info(
        version="dev", git_commit="unknown", build_date="unknown"
    )
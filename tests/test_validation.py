from vps_setup.types import Config, Profile, ProfileComponents, Server
from vps_setup.validation import validate_config, validate_host, validate_profile, validate_server


def test_validate_host_accepts_ipv4_and_hostnames() -> None:
    assert validate_host("192.168.1.10")
    assert validate_host("web-1.example.com")
    assert validate_host("localhost")


def test_validate_host_rejects_bad_values() -> None:
    assert not validate_host("256.1.1.1.1")
    assert not validate_host("-bad.example.com")
    assert not validate_host("under_score.example.com")
    assert not validate_host("a" * 254)


def test_validate_server_reports_every_problem() -> None:
    server = Server(name="bad name!", host="not a host", user="", port=70000, os="arch")
    errors = validate_server(server)

    assert len(errors) == 5
    assert any("letters, numbers" in e for e in errors)
    assert any("Invalid host" in e for e in errors)
    assert "User is required" in errors
    assert any("Port" in e for e in errors)
    assert any("OS must be" in e for e in errors)


def test_validate_server_limits_tags_and_notes() -> None:
    server = Server(
        name="web",
        host="10.0.0.1",
        user="root",
        tags=["t"] * 101 + ["x" * 51],
        notes="n" * 1001,
    )
    errors = validate_server(server)

    assert any("No more than 100 tags" in e for e in errors)
    assert any("50 characters" in e for e in errors)
    assert any("Notes" in e for e in errors)


def test_validate_server_name_length() -> None:
    assert validate_server(Server(name="a" * 64, host="h", user="u")) == []
    assert validate_server(Server(name="a" * 65, host="h", user="u")) == [
        "Server name must be 64 characters or less"
    ]


def test_validate_server_rejects_boolean_port_and_bad_timestamp() -> None:
    server = Server(name="web", host="h", user="u", port=True, created_at="yesterday")
    errors = validate_server(server)

    assert any("Port" in e for e in errors)
    assert "createdAt must be an ISO-8601 timestamp" in errors


def test_validate_profile_requires_an_enabled_component() -> None:
    profile = Profile(name="empty", components=ProfileComponents())
    assert validate_profile(profile) == ["At least one component must be enabled"]


def test_validate_profile_collects_all_errors() -> None:
    profile = Profile(name="", components=ProfileComponents(), runtime_user="", overrides=[])  # type: ignore[arg-type]
    errors = validate_profile(profile)

    assert "Profile name is required" in errors
    assert "At least one component must be enabled" in errors
    assert "Runtime user is required" in errors
    assert "Overrides must be a mapping" in errors


def test_validate_profile_rejects_non_boolean_toggles() -> None:
    profile = Profile(name="p", components=ProfileComponents(docker="yes", security=True))  # type: ignore[arg-type]
    assert validate_profile(profile) == ["Component 'docker' must be true or false"]


def test_validate_config_bounds() -> None:
    assert validate_config(Config()) == []
    errors = validate_config(Config(log_level="trace", history_retention_days=0))
    assert len(errors) == 2

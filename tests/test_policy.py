import pytest

from execution_core.errors import SecurityViolation
from sandbox.policy import (
    CREDENTIAL_REFERENCE_MESSAGE,
    EnvironmentPolicy,
    analyze_code_risk,
    check_global_code,
    find_credential_references,
    header_env_vars,
)

SOURCE_ENV = {
    "PATH": "/usr/bin",
    "HOME": "/home/app",
    "LANG": "C.UTF-8",
    "KEYBOARD_API_TOKEN": "tok-1234567890",
    "keyboard_lower_secret": "lower-secret-value",
    "KEYBOARD_PROVIDER_API_ENDPOINT": "https://provider.example.com",
    "AWS_SECRET_ACCESS_KEY": "should-not-travel",
}


def _policy() -> EnvironmentPolicy:
    return EnvironmentPolicy("KEYBOARD_", source_env=SOURCE_ENV)


def test_credential_match_is_case_insensitive() -> None:
    policy = _policy()
    assert policy.is_credential("KEYBOARD_X")
    assert policy.is_credential("keyboard_x")
    assert not policy.is_credential("MY_KEYBOARD_X")
    assert set(policy.credential_variables()) == {
        "KEYBOARD_API_TOKEN",
        "keyboard_lower_secret",
        "KEYBOARD_PROVIDER_API_ENDPOINT",
    }


def test_global_environment_has_no_credentials() -> None:
    env = _policy().global_environment()
    assert env["PATH"] == "/usr/bin"
    assert "HOME" not in env
    assert "AWS_SECRET_ACCESS_KEY" not in env
    assert not [name for name in env if name.upper().startswith("KEYBOARD_")]
    assert env["PYTHONPATH"]


def test_credential_environment_adds_credentials_and_headers() -> None:
    env = _policy().credential_environment({"KEYBOARD_PROVIDER_USER_TOKEN_FOR_GITHUB": "gh-value"})
    assert env["KEYBOARD_API_TOKEN"] == "tok-1234567890"
    assert env["KEYBOARD_PROVIDER_USER_TOKEN_FOR_GITHUB"] == "gh-value"
    assert "AWS_SECRET_ACCESS_KEY" not in env


def test_reduced_environment_keeps_only_harmless_credentials() -> None:
    env = _policy().reduced_environment({"KEYBOARD_PROVIDER_USER_TOKEN_FOR_X": "t"})
    assert env["HOME"] == "/home/app"
    assert env["KEYBOARD_PROVIDER_API_ENDPOINT"] == "https://provider.example.com"
    assert "KEYBOARD_API_TOKEN" not in env
    assert "KEYBOARD_PROVIDER_USER_TOKEN_FOR_X" not in env


def test_secret_values_include_headers() -> None:
    secrets = _policy().secret_values({"KEYBOARD_PROVIDER_USER_TOKEN_FOR_X": "hdr-secret"})
    assert {"tok-1234567890", "lower-secret-value", "hdr-secret"} <= secrets


def test_header_env_vars_maps_only_token_headers() -> None:
    env = header_env_vars(
        {
            "X-Keyboard-Provider-User-Token-For-Github": "abc",
            "X-Keyboard-Provider-User-Token-For-Empty": "",
            "Authorization": "Bearer nope",
        }
    )
    assert env == {"KEYBOARD_PROVIDER_USER_TOKEN_FOR_GITHUB": "abc"}


def test_global_code_naming_credentials_is_rejected() -> None:
    check_global_code("data = user()\nreturn data['id']")
    with pytest.raises(SecurityViolation) as excinfo:
        check_global_code("import os\nreturn os.environ['KEYBOARD_API_TOKEN']")
    assert excinfo.value.message == CREDENTIAL_REFERENCE_MESSAGE
    assert find_credential_references("KEYBOARD_A + KEYBOARD_B + KEYBOARD_A") == ["KEYBOARD_A", "KEYBOARD_B"]


@pytest.mark.parametrize(
    ("code", "level"),
    [
        ("print(1 + 1)", "low"),
        ("import os\nprint(os.environ.get('HOME'))", "medium"),
        ("import urllib.request\nurllib.request.urlopen('http://x')", "medium"),
        ("import os, requests\nrequests.get(os.environ['URL'])", "high"),
    ],
)
def test_analyze_code_risk_levels(code: str, level: str) -> None:
    assert analyze_code_risk(code).risk_level == level


def test_analyze_code_risk_reports_module_usage() -> None:
    analysis = analyze_code_risk("import subprocess\nsubprocess.run(['ls'])")
    assert analysis.has_module_usage
    assert analysis.to_dict()["risk_level"] == "low"


def test_service_switches_are_not_secrets() -> None:
    policy = EnvironmentPolicy("KEYBOARD_", source_env={"KEYBOARD_FULL_CODE_EXECUTION": "true"})
    assert "true" not in policy.secret_values()

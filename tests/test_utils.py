"""Unit tests for utility functions in dns_watch.cli.

Tests cover:
- Host variable parsing (parse_host_var)
- Constant parsing (parse_const_var)
- List parsing (parse_list_var)
- Output path inference (default_output_path)
- Boolean parsing (_parse_bool)
"""

import pytest

from dns_watch.cli import (
    ConfigError,
    ConstVar,
    HostVar,
    ListVar,
    ReverseMode,
    _parse_bool,
    default_output_path,
    parse_const_var,
    parse_host_var,
    parse_list_var,
)

# =============================================================================
# Host Variable Parsing Tests
# =============================================================================


def test_parse_host_var_name_only_uses_name_as_hostname() -> None:
    """'--var www.example.com' is the same as '--var www.example.com:www.example.com'."""
    assert parse_host_var("www.example.com") == HostVar(
        "www.example.com", "www.example.com", ReverseMode.NONE
    )


def test_parse_host_var_name_and_host() -> None:
    assert parse_host_var("web:web.example.com") == HostVar("web", "web.example.com")


def test_parse_host_var_hostname_mode() -> None:
    assert parse_host_var("web:web.example.com:hn").reverse_mode == ReverseMode.HOSTNAME


def test_parse_host_var_fqdn_mode() -> None:
    assert parse_host_var("web:web.example.com:fqdn").reverse_mode == ReverseMode.FQDN


def test_parse_host_var_mode_is_case_insensitive() -> None:
    assert parse_host_var("web:web.example.com:FQDN").reverse_mode == ReverseMode.FQDN


def test_parse_host_var_empty_host_defaults_to_name() -> None:
    """'NAME::hn' keeps NAME as the hostname."""
    spec = parse_host_var("web.example.com::hn")
    assert spec.hostname == "web.example.com"
    assert spec.reverse_mode == ReverseMode.HOSTNAME


def test_parse_host_var_rejects_unknown_mode() -> None:
    with pytest.raises(ConfigError, match="reverse mode"):
        parse_host_var("web:web.example.com:ptr")


def test_parse_host_var_rejects_missing_name() -> None:
    with pytest.raises(ConfigError):
        parse_host_var(":web.example.com")


# =============================================================================
# Constant Parsing Tests
# =============================================================================


def test_parse_const_var() -> None:
    assert parse_const_var("NAME=VALUE") == ConstVar("NAME", "VALUE")


def test_parse_const_var_splits_on_first_equals_only() -> None:
    assert parse_const_var("opts=a=b") == ConstVar("opts", "a=b")


def test_parse_const_var_allows_empty_value() -> None:
    assert parse_const_var("empty=") == ConstVar("empty", "")


def test_parse_const_var_requires_equals() -> None:
    with pytest.raises(ConfigError, match="NAME=VALUE"):
        parse_const_var("NAME")


def test_parse_const_var_requires_name() -> None:
    with pytest.raises(ConfigError):
        parse_const_var("=VALUE")


# =============================================================================
# List Parsing Tests
# =============================================================================


def test_parse_list_var() -> None:
    assert parse_list_var("ports=80=443=8080") == ListVar("ports", ("80", "443", "8080"))


def test_parse_list_var_bare_name_is_empty_list() -> None:
    assert parse_list_var("nothing") == ListVar("nothing", ())


def test_parse_list_var_keeps_order_and_duplicates() -> None:
    assert parse_list_var("l=b=a=b").values == ("b", "a", "b")


def test_parse_list_var_requires_name() -> None:
    with pytest.raises(ConfigError):
        parse_list_var("=a=b")


# =============================================================================
# Output Path Tests
# =============================================================================


@pytest.mark.parametrize(
    "template,expected",
    [
        ("haproxy.cfg.j2", "haproxy.cfg"),
        ("/etc/nginx/upstreams.conf.jinja", "/etc/nginx/upstreams.conf"),
        ("hosts.jinja2", "hosts"),
        ("dnsmasq.conf.tmpl", "dnsmasq.conf"),
        ("config.txt", "config.txt.out"),
        ("template", "template.out"),
    ],
)
def test_default_output_path(template: str, expected: str) -> None:
    assert default_output_path(template) == expected


# =============================================================================
# Boolean Parsing Tests
# =============================================================================


def test_parse_bool_true_values() -> None:
    """Various truthy string values are parsed as True."""
    for value in ["1", "true", "True", "TRUE", "yes", "Yes", "y", "Y", "on", "ON"]:
        assert _parse_bool(value) is True, f"Expected True for '{value}'"


def test_parse_bool_false_values() -> None:
    """Various falsy string values are parsed as False."""
    for value in ["0", "false", "False", "no", "n", "off", ""]:
        assert _parse_bool(value) is False, f"Expected False for '{value}'"


def test_parse_bool_native_bool() -> None:
    assert _parse_bool(True) is True
    assert _parse_bool(False) is False


def test_parse_bool_none_uses_default() -> None:
    """None input returns the default value."""
    assert _parse_bool(None, default=True) is True
    assert _parse_bool(None, default=False) is False

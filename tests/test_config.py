import socket

import pytest

from dpqchat import config
from dpqchat.config import (
    HostOption,
    find_available_port,
    force_cleanup_terminal,
    is_valid_message_content,
    is_valid_username,
)


def test_fixed_host_options_map_to_constants():
    assert HostOption.LOCALHOST.to_ip() == config.DEFAULT_HOST_LOCALHOST
    assert HostOption.WILDCARD.to_ip() == config.DEFAULT_HOST_WILDCARD


def test_local_network_is_private_or_localhost():
    ip = HostOption.LOCAL_NETWORK.to_ip()
    assert ip == config.DEFAULT_HOST_LOCALHOST or ip.startswith(("192.168.", "10.", "172."))


def test_display_names():
    assert HostOption.LOCALHOST.display_name() == "Localhost (127.0.0.1) - Only local connections"
    assert HostOption.WILDCARD.display_name() == "All Interfaces (0.0.0.0) - External connections"
    assert "192.168.x.x" in HostOption.LOCAL_NETWORK.display_name()


def test_find_available_port_in_range():
    port = find_available_port("127.0.0.1")
    assert config.FIXED_PORT <= port <= config.FALLBACK_PORT_END


def test_find_available_port_skips_taken_port():
    first = find_available_port("127.0.0.1")
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", first))
        holder.listen()
        second = find_available_port("127.0.0.1")
    assert second != first
    assert config.FIXED_PORT <= second <= config.FALLBACK_PORT_END


def test_find_available_port_invalid_host():
    with pytest.raises(OSError, match="No available ports in range 40000-40010"):
        find_available_port("not-an-ip")


def test_force_cleanup_terminal_exits(capsys):
    with pytest.raises(SystemExit) as excinfo:
        force_cleanup_terminal("bye")
    assert excinfo.value.code == 1
    assert "\x1b[2J" in capsys.readouterr().out


@pytest.mark.parametrize("name", ["alice", "alice_01", "a-b", "a" * 32, "é" * 16])
def test_valid_usernames(name):
    assert is_valid_username(name) is True


@pytest.mark.parametrize("name", ["", "a" * 33, "bad name", "x!", "é" * 17])
def test_invalid_usernames(name):
    assert is_valid_username(name) is False


def test_message_content_validation():
    assert is_valid_message_content("hi") is True
    assert is_valid_message_content("x" * config.MAX_MESSAGE_LENGTH) is True
    assert is_valid_message_content("x" * (config.MAX_MESSAGE_LENGTH + 1)) is False
    assert is_valid_message_content("   \n\t") is False
    assert is_valid_message_content("") is False
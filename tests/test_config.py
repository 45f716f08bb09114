import json

import pytest

from swgproxy.config import (
    DEFAULT_MAIN_RECV_BATCH_SIZE,
    DEFAULT_RELAY_BATCH_SIZE,
    DEFAULT_SEND_CHANNEL_CAPACITY,
    IPV4_HEADER_LENGTH,
    UDP_HEADER_LENGTH,
    WIREGUARD_DATA_PACKET_OVERHEAD,
    MTUTooSmallError,
    PerfConfig,
    Service,
    load_json_strict,
    new_packet_handler,
    wg_tunnel_mtu_for_handler,
)
from swgproxy.handler import Headroom
from swgproxy.paranoid import ParanoidHandler
from swgproxy.zerooverhead import ZeroOverheadHandler

PSK = bytes(range(32))


def test_perf_config_defaults_applied():
    pc = PerfConfig()
    pc.check_and_apply_defaults()
    assert pc.relay_batch_size == 256
    assert pc.main_recv_batch_size == 64
    assert pc.send_channel_capacity == 1024
    assert pc.relay_batch_size == DEFAULT_RELAY_BATCH_SIZE
    assert pc.main_recv_batch_size == DEFAULT_MAIN_RECV_BATCH_SIZE
    assert pc.send_channel_capacity == DEFAULT_SEND_CHANNEL_CAPACITY


def test_perf_config_explicit_values_kept():
    pc = PerfConfig(
        batch_mode="no",
        relay_batch_size=1024,
        main_recv_batch_size=1,
        send_channel_capacity=64,
    )
    pc.check_and_apply_defaults()
    assert pc == PerfConfig("no", 1024, 1, 64)


@pytest.mark.parametrize("mode", ["", "no", "sendmmsg"])
def test_perf_config_known_batch_modes(mode):
    pc = PerfConfig(batch_mode=mode)
    pc.check_and_apply_defaults()
    assert pc.batch_mode == mode


def test_perf_config_unknown_batch_mode():
    with pytest.raises(ValueError, match="unknown batch mode"):
        PerfConfig(batch_mode="io_uring").check_and_apply_defaults()


@pytest.mark.parametrize("size", [-1, 1025])
def test_perf_config_relay_batch_size_out_of_range(size):
    with pytest.raises(ValueError, match="relay batch size"):
        PerfConfig(relay_batch_size=size).check_and_apply_defaults()


@pytest.mark.parametrize("size", [-1, 1025])
def test_perf_config_main_recv_batch_size_out_of_range(size):
    with pytest.raises(ValueError, match="main recv batch size"):
        PerfConfig(main_recv_batch_size=size).check_and_apply_defaults()


@pytest.mark.parametrize("capacity", [-1, 1, 63])
def test_perf_config_send_channel_capacity_too_small(capacity):
    with pytest.raises(ValueError, match="send channel capacity"):
        PerfConfig(send_channel_capacity=capacity).check_and_apply_defaults()


def test_new_packet_handler_modes():
    zero_overhead = new_packet_handler("zero-overhead", PSK)
    paranoid = new_packet_handler("paranoid", PSK)
    assert isinstance(zero_overhead, ZeroOverheadHandler)
    assert isinstance(paranoid, ParanoidHandler)
    assert zero_overhead.headroom() == Headroom(front=0, rear=0)
    assert paranoid.headroom() == Headroom(front=26, rear=16)


def test_new_packet_handler_unknown_mode():
    with pytest.raises(ValueError, match="unknown proxy mode: plain"):
        new_packet_handler("plain", PSK)


def test_new_packet_handler_bad_psk():
    with pytest.raises(ValueError):
        new_packet_handler("paranoid", b"short")


def test_handler_round_trip_through_factory():
    handler = new_packet_handler("paranoid", PSK)
    wg_packet = bytes([4]) + bytes(range(1, 64))
    assert handler.decrypt(handler.encrypt(wg_packet, 1472)) == wg_packet


def test_wg_tunnel_mtu_zero_overhead():
    handler = new_packet_handler("zero-overhead", PSK)
    max_size = 1500 - IPV4_HEADER_LENGTH - UDP_HEADER_LENGTH
    assert wg_tunnel_mtu_for_handler(handler, max_size) == 1440


@pytest.mark.parametrize("mode", ["zero-overhead", "paranoid"])
@pytest.mark.parametrize("max_size", [1232, 1252, 1452, 1472])
def test_wg_tunnel_mtu_invariants(mode, max_size):
    handler = new_packet_handler(mode, PSK)
    headroom = handler.headroom()
    room = max_size - headroom.front - headroom.rear - WIREGUARD_DATA_PACKET_OVERHEAD
    mtu = wg_tunnel_mtu_for_handler(handler, max_size)
    assert mtu % 16 == 0
    assert room - 16 < mtu <= room


def test_mtu_too_small_error():
    err = MTUTooSmallError()
    assert isinstance(err, ValueError)
    assert str(err) == "MTU must be at least 1280"


def test_service_is_abstract():
    with pytest.raises(TypeError):
        Service()


def test_load_json_strict_round_trip(tmp_path):
    document = {"servers": [{"name": "wg0", "mtu": 1500}], "clients": []}
    path = tmp_path / "config.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    assert load_json_strict(path) == document


@pytest.mark.parametrize("constant", ["NaN", "Infinity", "-Infinity"])
def test_load_json_strict_rejects_constants(tmp_path, constant):
    path = tmp_path / "config.json"
    path.write_text('{"mtu": %s}' % constant, encoding="utf-8")
    with pytest.raises(ValueError):
        load_json_strict(path)


def test_load_json_strict_rejects_malformed(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"mtu": ', encoding="utf-8")
    with pytest.raises(json.JSONDecodeError):
        load_json_strict(path)


def test_load_json_strict_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_json_strict(tmp_path / "missing.json")
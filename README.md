# swgproxy

A simple UDP proxy with minimal overhead for WireGuard traffic. It sits between
WireGuard peers and makes their packets harder to recognise on the wire. It is
built on `asyncio` and needs Python 3.11 or later.

Two proxy modes are available:

- **zero-overhead** — the first 16 bytes of every packet are encrypted with AES.
  Handshake packets (message types 1, 2 and 3) are additionally padded to a
  random length and their remainder is sealed with XChaCha20-Poly1305, so they
  blend in with normal traffic. Data packets keep their original size. Packets
  shorter than 16 bytes pass through unchanged.
- **paranoid** — every packet, whatever its type, is padded to a random length
  that still fits the MTU and then sealed as a whole with XChaCha20-Poly1305.
  This hides packet types and the fact that WireGuard data packets are always a
  multiple of 16 bytes long.

Both ends of a tunnel must use the same mode and the same 32-byte pre-shared key.

## Installation

```
pip install swgproxy
```

To run the test suite:

```
pip install "swgproxy[test]"
pytest
```

## How it fits together

```
WireGuard peer  <->  swgproxy client  <~~ obfuscated UDP ~~>  swgproxy server  <->  WireGuard peer
```

- A **server** (`swgproxy.server.Server`) listens for obfuscated packets from
  clients, decrypts them and forwards them to the WireGuard endpoint. Replies
  from that endpoint are encrypted and sent back to the client.
- A **client** (`swgproxy.client.Client`) listens for plain WireGuard packets
  from the local WireGuard interface, encrypts them and sends them to the proxy
  server. Replies are decrypted and returned to the WireGuard peer.

Each remote peer gets its own session with its own socket. A session ends once
180 seconds pass without a handshake initiation or response, which matches
WireGuard's own reject-after time. Replies that do not come from the expected
endpoint are ignored; an IPv4 address and its IPv4-mapped IPv6 form count as
the same endpoint.

## Configuration

The service reads a JSON file describing any number of servers and clients.
Unknown keys are rejected, as are `NaN` and `Infinity`.

```json
{
  "servers": [
    {
      "name": "wg0",
      "proxyListen": ":20220",
      "proxyMode": "zero-overhead",
      "proxyPSK": "placeholder",
      "wgEndpoint": "[::1]:20221",
      "mtu": 1500
    }
  ],
  "clients": [
    {
      "name": "wg0",
      "wgListen": ":20222",
      "proxyEndpoint": "[2001:db8::1]:20220",
      "proxyMode": "zero-overhead",
      "proxyPSK": "placeholder",
      "mtu": 1500
    }
  ]
}
```

Replace each `proxyPSK` value with the base64 encoding of 32 random bytes,
identical on both ends.

Server keys: `name`, `proxyListenNetwork`, `proxyListen`, `proxyMode`,
`proxyPSK`, `proxyFwmark`, `proxyTrafficClass`, `wgEndpoint`,
`wgConnListenNetwork`, `wgConnListenAddress`, `wgFwmark`, `wgTrafficClass`,
`mtu`, plus the performance keys below.

Client keys: `name`, `wgListenNetwork`, `wgListen`, `wgFwmark`,
`wgTrafficClass`, `proxyEndpoint`, `proxyConnListenNetwork`,
`proxyConnListenAddress`, `proxyMode`, `proxyPSK`, `proxyFwmark`,
`proxyTrafficClass`, `mtu`, plus the performance keys below.

| Key | Meaning |
| --- | --- |
| `proxyMode` | `zero-overhead` or `paranoid` |
| `mtu` | MTU of the path between client and server; at least 1280 |
| `wgEndpoint` / `proxyEndpoint` | `host:port`, where host is an IP address or a domain name |
| `*ListenNetwork` | `udp` (default), `udp4` or `udp6` |
| `proxyListen`, `wgListen`, `*ListenAddress` | `host:port`, `:port`, or empty for any address and a random port |
| `proxyFwmark`, `wgFwmark` | socket mark (Linux only) |
| `proxyTrafficClass`, `wgTrafficClass` | IP TOS / IPv6 traffic class (not on Windows) |
| `batchMode` | `""`, `no` or `sendmmsg` |
| `relayBatchSize`, `mainRecvBatchSize` | 1–1024, 0 for the default (256 and 64) |
| `sendChannelCapacity` | at least 64, 0 for the default (1024); packets beyond it are dropped |

Path MTU discovery is turned on for every socket on Linux, macOS and FreeBSD.
On Linux and macOS the listening sockets also receive packet information, so
replies leave from the local address the peer's packet arrived on.

When the service starts, it logs the tunnel MTU to configure on the WireGuard
interface for each client and server. It is the proxy MTU minus the IP and UDP
headers, the mode's overhead and WireGuard's own 32 bytes, rounded down to a
multiple of 16.

## Running

```
swgproxy --help
```

lists the options (each may be written with one dash or two):

- `-confPath <path>` — the JSON configuration file; required.
- `-testConf` — load and check the configuration, then exit without starting
  anything.
- `-zapConf <preset or path>` — logging: `console` (default, coloured, with
  timestamps), `systemd` (as `console` but without timestamps), `production`
  (JSON lines) or `development` (debug level, no sampling); any other value is
  the path of a JSON logging configuration.
- `-logLevel <level>` — override the log level: `debug`, `info`, `warn`,
  `error`, `dpanic`, `panic` or `fatal`.

The command returns 1 when the configuration cannot be loaded or the services
cannot be started. Otherwise it runs until it receives SIGINT or SIGTERM, then
stops every session; packets already queued are still written out.

## Using the library

The packet handlers can be used on their own:

```python
import os

from swgproxy.config import new_packet_handler

psk = os.urandom(32)
handler = new_packet_handler("paranoid", psk)

wg_packet = bytes([4]) + os.urandom(127)
swgp_packet = handler.encrypt(wg_packet, 1472)
assert handler.decrypt(swgp_packet) == wg_packet
```

The second argument to `encrypt` is the largest packet size that may be sent;
the padding is chosen to fit it. Malformed or oversized packets raise
`swgproxy.handler.PacketSizeError` or `swgproxy.handler.PayloadLengthError`,
and packets that fail authentication raise `swgproxy.handler.HandlerError`,
the base class of both.

Addresses are handled by `swgproxy.addr.parse_addr`, which accepts both
`[ip]:port` and `domain:port` forms and returns an `Addr`.

A whole deployment can be built from a configuration file with
`swgproxy.manager.load_config`, whose `Config.manager()` returns a `Manager`.
Its `start()` and `stop()` coroutines start and stop every configured service
in order.

## What it does not do

- There is no profiling endpoint. A `pprof` section in the configuration is
  accepted only when it is disabled; enabling it is an error.
- `batchMode`, `relayBatchSize` and `mainRecvBatchSize` are checked but do not
  change how packets are handled: every socket sends and receives one packet
  at a time.
- Socket marks, packet information and path MTU discovery are not set on
  Windows.
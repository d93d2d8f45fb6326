# holepunch

Building blocks for connecting two machines behind NAT directly over UDP.

The package contains:

- `holepunch.rendezvous`: a **rendezvous server** that records the public UDP
  addresses of the peers in an application group and tells each side where
  the other one is;
- `holepunch.discovery`: a **discovery client** that reports itself to the
  rendezvous server, learns the address of its partner and sends
  hole-punching datagrams to it;
- `holepunch.protocol`: the JSON messages exchanged between them
  (`UDPMsg`, `Msg`, `Res`, `Ip`, `Peer` and the `UdpType`, `ClientType`,
  `MessageType` enums);
- `holepunch.rdpconfig`: the YAML configuration files of both programs
  (`ClientConfig`, `ServerConfig`, `load_client_config`, `load_server_config`);
- `holepunch.kcp`: a pure-Python **KCP** state machine (reliable, ordered
  delivery over datagrams), with traffic counters in `holepunch.snmp`;
- `holepunch.crypt`: packet **ciphers** (AES, SM4, Twofish, 3DES, CAST5,
  Blowfish, TEA, XTEA, Salsa20, XOR, none), and `holepunch.entropy`: nonce
  generators (`NonceMD5`, `NonceAES128`);
- `holepunch.framing`: the length-prefixed **framing** used to carry tunnel
  packets over a TCP stream;
- `holepunch.tunconfig` and `holepunch.tunclient`: the settings
  (`TunConfig`) and the line-based pairing handshake (`PairingState`,
  `derive_key`, `select_block_crypt`) of a peer-to-peer TCP tunnel client.

## Installation

```
pip install holepunch
```

For running the test suite:

```
pip install "holepunch[test]"
pytest
```

## Running the rendezvous server

Run it on a host with a public address:

```
holepunch-server -c config.yml
```

If the configuration file does not exist or cannot be read, the defaults
(listen on `0.0.0.0`, port `30124`) are used; the configuration in use is
always written back to the file so it can be edited. Logs go to the console
and to `logs/server.log`, rotated at midnight. Once a minute, addresses that
have not been refreshed for five minutes are forgotten. Stop it with
Ctrl-C or SIGTERM. With `-d` the server restarts itself in the background
and the command returns at once.

## Running a peer

Each side runs the client with its own configuration file:

```
holepunch-client -c config.yml
```

A peer is either the server side (`type: client_server_type`, the machine
offering a service) or the client side (`type: client_client_type`, the
machine that wants to reach it). Both sides must use the same `appname` to
be paired. The file names the rendezvous server (`serverhost`,
`serverport`) and two local UDP ports: `clientportfrosvc` for talking to the
server and `clientportforp2ptrance` for the peer-to-peer traffic. As with
the server, a default file is written on first start; `-d` runs the client
in the background. Logs are printed as JSON lines.

While running, the client asks the server for its partner's address every
5 seconds and re-registers its peer-to-peer port every 30 seconds. Whenever
the partner's address changes, or the server asks for it, two hole-punching
datagrams are sent to the partner from the peer-to-peer port. On the client
side each new partner address is also put on `DiscoveryClient.ip_changes`.

## Using the library

Framing tunnel packets over a byte stream:

```python
from holepunch.framing import encode_frame, FrameDecoder

wire = encode_frame(b"packet one") + encode_frame(b"packet two")

decoder = FrameDecoder()
for payload in decoder.feed(wire):
    print(payload)
```

Encrypting a packet with a key derived from a shared secret:

```python
from holepunch.crypt import new_aes_block_crypt
from holepunch.tunclient import derive_key

passwd = "password"
crypt = new_aes_block_crypt(derive_key(passwd))

sealed = crypt.encrypt(b"\x00" * 20 + b"payload")
assert crypt.decrypt(sealed) == b"\x00" * 20 + b"payload"
```

Building and reading discovery messages:

```python
from holepunch.protocol import UDPMsg, UdpType

msg = UDPMsg(code=UdpType.KEEP_ALIVE, data=b"", seq="42")
assert UDPMsg.from_json(msg.to_json()).seq == "42"
```

Driving two KCP endpoints by hand:

```python
from holepunch.kcp import KCP

to_b = []
a = KCP(1, to_b.append)
b = KCP(1, lambda datagram: None)
a.nodelay(1, 10, 2, 1)

a.send(b"hello")
a.flush()
for datagram in to_b:
    b.input(datagram)
assert b.recv() == b"hello"
```

`KCP` does no I/O of its own: your socket loop feeds received datagrams to
`KCP.input`, queues data with `KCP.send`, reads it back with `KCP.recv` and
calls `KCP.update` periodically (`KCP.check` says when). Counters are kept in
`holepunch.snmp.DEFAULT_SNMP`.

## What the package does not do

- It only opens the NAT path. The discovery client does not carry any
  application traffic (such as a remote-desktop session) over the punched
  path, and there is no command that forwards TCP connections through it.
- There is no KCP session or listener on top of real sockets, no stream
  multiplexing and no forward error correction; `holepunch.kcp` is the bare
  state machine.
- There is no command for the pairing-based tunnel client: `tunconfig` and
  `tunclient` provide its settings, key derivation, cipher selection and
  handshake state only, and no pairing server is included.
- No TUN device is created or configured.
# posttunnel

posttunnel carries TCP connections and DNS lookups between two machines
inside HTTP/1.1 `POST` requests and `200 OK` responses sent over keep-alive
connections.

It has two halves:

- **the client** runs next to your applications. It offers a SOCKS5 proxy
  (no authentication, `CONNECT` to IPv4 addresses only) and a UDP DNS
  forwarder. What it receives is packed into numbered packets and uploaded
  to the server as `POST /uploadpfp` requests; it fetches the server's
  packets with `POST /image<ack>` polls.
- **the server** answers those requests, opens the real TCP connections,
  forwards DNS queries to an upstream resolver, and sends replies and
  connection data back in the poll responses.

Packets in both directions are numbered. A packet is sent again until the
other side confirms it, and received packets are processed strictly in
order. Sessions with data waiting share the room in each packet, so one
busy connection cannot crowd out the others.

## Installation

```
pip install .
```

Python 3.10 or later is required; there are no third-party dependencies.

## Running

On the machine traffic should leave from:

```
posttunnel-server
```

Options:

- `--listen-port` (default 80): TCP port for tunnel requests, on all
  interfaces.
- `--dns-host` (default `1.1.1.1`) and `--dns-port` (default 53): the
  upstream resolver. Only replies coming from exactly this address are
  accepted.
- `--max-send` (default `0x7fff`, any integer form `int(x, 0)` accepts):
  size limit used when filling a download packet with session data.

On the machine with the applications:

```
posttunnel-client
```

Options:

- `--server-host` (default `127.0.0.1`) and `--server-port` (default 80):
  where the server listens. The client keeps two connections open to it, one
  for uploads and one for polls, and retries every second when a connection
  fails.
- `--socks-port` (default 8080): SOCKS5 port.
- `--dns-port` (default 10053): UDP port for DNS queries, on all interfaces.
- `--max-send` (default `0x7fff`): size limit used when filling an upload
  packet with session data.

Then point an application at the proxy:

```
curl --socks5 127.0.0.1:8080 http://example.com/
```

or send DNS queries to UDP port 10053 on the client machine. Unanswered DNS
queries are forgotten after 20 seconds.

## Limitations

- Only SOCKS5 `CONNECT` to IPv4 addresses is supported. Domain-name and IPv6
  requests and `UDP ASSOCIATE` are refused and the SOCKS connection is closed.
- There is no authentication and no encryption: the tunnel traffic is plain
  HTTP, and the server accepts any client that speaks the protocol. A server
  keeps one set of sessions and packet numbers, so it serves one client.
- A packet that arrives ahead of a missing one, or a packet with too little
  room to share among the waiting sessions, stops the client or server with
  an error rather than being recovered from.
- The `Host`, `Origin` and `Referer` headers of the client's requests always
  name `127.0.0.1`.

## Using the pieces

The wire format and building blocks can be used on their own:

- `posttunnel.protocol` holds the command codes and encoders
  (`encode_client_connect`, `encode_client_write`, `encode_server_dns`, ...).
- `posttunnel.clientproto.iter_server_messages` decodes a packet from the
  server; `posttunnel.serverproto.ClientStreamDecoder` decodes the client's
  message stream.
- `posttunnel.httpwire` builds the HTTP requests and responses and parses
  heads incrementally with `HeadParser`.
- `posttunnel.socks5.Socks5Handshake` parses a SOCKS5 greeting and connect
  request; `build_connect_reply` makes the answer.
- `posttunnel.sequence` provides `InboundSequencer` and `OutboundSequencer`
  for in-order, confirmed delivery.
- `posttunnel.balance.balance` computes fair shares of a byte budget, and
  `posttunnel.loadbalance.plan_writes` uses it to take data from
  `posttunnel.sessionbuffer.SessionBuffer` queues.
- `posttunnel.client.TunnelClient` and `posttunnel.server.TunnelServer` run
  the two halves; `build_upload`/`handle_download` and
  `handle_upload`/`build_download` expose their packet handling directly.

## Tests

```
pip install .[test]
pytest
```
# soxy

soxy multiplexes TCP services over a single message channel, such as an
RDP virtual channel. A *frontend* listens on local TCP ports; a
*backend* on the far side does the actual work. Every TCP client is
carried across the channel as a stream of small chunks.

## Services

| Service     | Default frontend port | Backend | What it does                                              |
|-------------|-----------------------|---------|-----------------------------------------------------------|
| `socks5`    | 1080                  | yes     | SOCKS5 proxy (CONNECT and BIND) exiting from the backend  |
| `input`     | 1081                  | no      | Console turning commands into keyboard input actions      |
| `stage0`    | 1082                  | no      | Uploads a file's bytes over the channel                   |
| `command`   | 3031                  | yes     | Interactive shell (`sh -i`, or `cmd.exe` on Windows)      |
| `clipboard` | 3032                  | yes     | Reads and writes the backend's clipboard                  |
| `forward`   | chosen by caller      | yes     | Forwards a local port to a fixed remote destination       |

Each service lives in its own module (`soxy.socks5`, `soxy.input`,
`soxy.stage0`, `soxy.command`, `soxy.clipboard`, `soxy.forward`) as a
`SERVICE` object. `soxy.catalog.load_services()` registers all of them
so that `soxy.service.lookup(name)` finds them.

The line-oriented frontends (`clipboard`, `input`, `stage0`) can be
used with any raw TCP client such as `nc`; `socks5` works with any
SOCKS5-aware program.

The clipboard backend calls an external tool: `pbpaste`/`pbcopy` on
macOS, PowerShell `Get-Clipboard`/`clip` on Windows, and `wl-paste`/`wl-copy`
(under Wayland), `xclip` or `xsel` elsewhere. Without one, clipboard
commands answer `KO`.

## Wire format

Each message on the channel is a `soxy.api.Chunk`:

```
+-----------+------+-------------+---------+
| client id | type | payload len | payload |
| u16 LE    | u8   | u16 LE      | bytes   |
+-----------+------+-------------+---------+
```

The type is `0xF0` (start, payload is the service name), `0xF1`
(data) or `0xF2` (end). A serialized chunk never exceeds 1590 bytes.

```python
from soxy.api import Chunk, ChunkType

chunk = Chunk.data(7, b"hello")
raw = chunk.serialized()

size = Chunk.can_deserialize_from(raw)   # full length, or None if incomplete
again = Chunk.deserialize(raw[:size])
assert again.chunk_type() is ChunkType.DATA
assert again.payload() == b"hello"
```

Malformed input raises `soxy.api.InvalidChunkType` or
`soxy.api.InvalidChunkSize`, both subclasses of `soxy.api.ApiError`.

## Channels and servers

A `soxy.channel.Channel` is built on a `queue.Queue` of outgoing
messages (chunks, `soxy.api.Shutdown`, `soxy.api.ResetClient`, and
input actions and settings). `Channel.run(kind, incoming_queue)`
dispatches incoming chunks to client streams; on the backend side it
starts the matching service handler for each new client. Putting
`None` on the incoming queue stops `run` with `soxy.api.PipelineBroken`.

`soxy.server.FrontendTcpServer.bind(service, (host, port), custom_data)`
opens a listener; `start(channel)` serves each client in its own thread
until `close()` is called.

Both sides can be wired together in one process, for example:

```python
import threading
from queue import Queue

from soxy.catalog import load_services
from soxy.channel import Channel
from soxy.server import FrontendTcpServer
from soxy.service import Kind, lookup

load_services()

to_backend, to_frontend = Queue(), Queue()
frontend = Channel(to_backend)
backend = Channel(to_frontend)
threading.Thread(target=backend.run, args=(Kind.BACKEND, to_backend), daemon=True).start()
threading.Thread(target=frontend.run, args=(Kind.FRONTEND, to_frontend), daemon=True).start()

server = FrontendTcpServer.bind(lookup("socks5"), ("127.0.0.1", 1080))
server.start(frontend)
```

The `forward` service takes its remote destination as custom data,
for example `FrontendTcpServer.bind(lookup("forward"), ("127.0.0.1", 8080), "10.0.0.5:80")`.

## Logging

```python
from soxy.logs import Level, init_logs

init_logs(Level.parse("debug"), "soxy.log")
```

Accepted levels are `off`, `error`, `warn`/`warning`, `info`, `debug`
and `trace`, in any case. The optional file is truncated at start; if
it cannot be opened, logs go to the terminal only.
`soxy.logs.virtual_channel_name(name)` gives the NUL-padded 8-byte
channel name (at most 7 bytes of name; `VIRTUAL_CHANNEL_DEFAULT_NAME`
is `"SOXY"`).

## What this package does not do

- It has no transport to an actual RDP virtual channel and no
  command-line programs: the frontend and backend are library objects
  that exchange messages through queues, and connecting those queues
  to a real channel is left to the caller.
- It has no FTP service.
- The `input` service only produces input actions (`soxy.input.KeyDown`,
  `KeyPress`, `KeyUp`, `Write`, `Pause`, `KeyboardDelay`) on the
  channel; `soxy.input.InputHandler` is an abstract interface and no
  implementation that types on a real keyboard is included.
- The `stage0` service only sends the file's bytes; no backend
  receives them.
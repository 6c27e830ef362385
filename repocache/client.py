# client.py -- Implementation of the client side of the pull protocol
# Copyright (C) 2008-2013 Jelmer Vernooij <jelmer@jelmer.uk>
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# repocache is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Client side of the git pull negotiation.

Only the subset of the protocol the cache needs is implemented: read the
reference advertisement, send a set of wants (optionally with an object
filter), send ``done`` and receive a single packfile. Protocol versions 0 and
1 are spoken; no "have" lines are ever sent.

The transports are:

 * a local ``git upload-pack`` subprocess (paths and ``file://`` URLs)
 * smart HTTP(S) over urllib3

A typical exchange::

    remote = get_remote("https://example.com/repo.git")
    with remote.start_pull() as stream:
        refs = stream.list_refs(b"HEAD", b"refs/heads/")
        resp = stream.negotiate(PullRequest(want=list(set(refs.values()))))
        data = resp.packfile.read()
"""

__all__ = [
    "HttpRemote",
    "PullRequest",
    "PullResponse",
    "PullStream",
    "Remote",
    "SubprocessRemote",
    "default_urllib3_manager",
    "default_user_agent_string",
    "find_git_command",
    "get_remote",
]

import io
import logging
import os
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING
from urllib.parse import unquote, urljoin, urlparse

if TYPE_CHECKING:
    import urllib3

from .config import Config, urlmatch_http_sections
from .errors import HangupException, HTTPUnauthorized, ProtocolError
from .protocol import (
    CAPABILITY_FILTER,
    CAPABILITY_OFS_DELTA,
    CAPABILITY_SIDE_BAND_64K,
    COMMAND_DONE,
    COMMAND_FILTER,
    COMMAND_WANT,
    Protocol,
    SideBandReader,
    agent_string,
    capability_agent,
    parse_capability,
    read_pkt_refs,
)

logger = logging.getLogger(__name__)


@dataclass
class PullRequest:
    """What to ask the remote for.

    Attributes:
      want: Hex SHAs of the objects to fetch
      filter_spec: Optional git-rev-list style object filter, e.g. blob:none
    """

    want: list[bytes] = field(default_factory=list)
    filter_spec: bytes | None = None


@dataclass
class PullResponse:
    """The result of a negotiation.

    Attributes:
      capabilities: Capabilities that were requested from the remote
      packfile: Readable binary stream of the packfile
    """

    capabilities: set[bytes]
    packfile: IO[bytes]

    def close(self) -> None:
        """Release the packfile stream."""
        self.packfile.close()


def _match_ref_prefixes(
    refs: dict[bytes, bytes], prefixes: tuple[bytes, ...]
) -> dict[bytes, bytes]:
    if not prefixes:
        return dict(refs)
    return {
        ref: sha
        for ref, sha in refs.items()
        if any(
            ref == prefix or (prefix.endswith(b"/") and ref.startswith(prefix))
            for prefix in prefixes
        )
    }


class PullStream:
    """An open pull conversation with a remote.

    The reference advertisement has already been read when a stream is
    returned from :meth:`Remote.start_pull`. A stream supports a single
    negotiation.
    """

    def __init__(self, refs: dict[bytes, bytes], capabilities: set[bytes]) -> None:
        self._refs = refs
        self.capabilities = capabilities
        self._negotiated = False

    def __enter__(self) -> "PullStream":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def has_capability(self, name: bytes) -> bool:
        """Check whether the remote advertised a capability.

        Capabilities with values (``agent=git/2.43``) match on their name.
        """
        return any(parse_capability(c)[0] == name for c in self.capabilities)

    def list_refs(self, *prefixes: bytes | str) -> dict[bytes, bytes]:
        """Return the advertised refs matching any of the given prefixes.

        A prefix ending in ``/`` matches every ref below it; any other prefix
        must match a ref name exactly. With no prefixes, every ref is
        returned. Peeled tag entries are never included.

        Returns: Dictionary mapping ref names to hex SHAs
        """
        encoded = tuple(p.encode("utf-8") if isinstance(p, str) else p for p in prefixes)
        return _match_ref_prefixes(self._refs, encoded)

    def _negotiate_capabilities(self, request: PullRequest) -> list[bytes]:
        capabilities = []
        if self.has_capability(CAPABILITY_SIDE_BAND_64K):
            capabilities.append(CAPABILITY_SIDE_BAND_64K)
        if self.has_capability(CAPABILITY_OFS_DELTA):
            capabilities.append(CAPABILITY_OFS_DELTA)
        if request.filter_spec:
            if self.has_capability(CAPABILITY_FILTER):
                capabilities.append(CAPABILITY_FILTER)
            else:
                logger.warning(
                    "Remote does not support object filtering; ignoring filter %s",
                    request.filter_spec.decode("ascii", "replace"),
                )
        capabilities.append(capability_agent())
        return capabilities

    def _write_request(
        self, proto: Protocol, request: PullRequest, capabilities: list[bytes]
    ) -> None:
        if not request.want:
            raise ValueError("negotiation needs at least one wanted object")
        if self._negotiated:
            raise ProtocolError("pull stream already negotiated")
        self._negotiated = True
        wants = list(dict.fromkeys(request.want))
        proto.write_pkt_line(
            COMMAND_WANT + b" " + wants[0] + b" " + b" ".join(capabilities) + b"\n"
        )
        for want in wants[1:]:
            proto.write_pkt_line(COMMAND_WANT + b" " + want + b"\n")
        if CAPABILITY_FILTER in capabilities and request.filter_spec:
            proto.write_pkt_line(COMMAND_FILTER + b" " + request.filter_spec + b"\n")
        proto.write_pkt_line(None)
        proto.write_pkt_line(COMMAND_DONE + b"\n")

    def _read_response(
        self, proto: Protocol, capabilities: list[bytes], raw: IO[bytes]
    ) -> IO[bytes]:
        """Read the acknowledgement and return the packfile stream."""
        pkt = proto.read_pkt_line()
        if pkt is None:
            raise ProtocolError("missing acknowledgement from remote")
        parts = pkt.rstrip(b"\n").split(b" ", 1)
        if parts[0] == b"ERR":
            raise ProtocolError("remote error: " + parts[-1].decode("utf-8", "replace"))
        if parts[0] not in (b"NAK", b"ACK"):
            raise ProtocolError(f"unexpected response {pkt!r} to done")
        if CAPABILITY_SIDE_BAND_64K in capabilities:
            return io.BufferedReader(SideBandReader(proto))
        return raw

    def negotiate(self, request: PullRequest) -> PullResponse:
        """Send the wants and return the packfile.

        Raises:
          ProtocolError: if the remote rejects the request or the
            conversation breaks down
        """
        raise NotImplementedError(self.negotiate)

    def close(self) -> None:
        """End the conversation and release the transport."""
        raise NotImplementedError(self.close)

    def abort(self) -> None:
        """Tear down the transport, interrupting a read blocked on it.

        Safe to call from another thread. The stream must still be closed.
        """
        raise NotImplementedError(self.abort)


class Remote:
    """A repository that objects can be pulled from."""

    def start_pull(self) -> PullStream:
        """Connect to the remote and read its reference advertisement."""
        raise NotImplementedError(self.start_pull)


def find_git_command() -> list[str]:
    """Find command to run for system Git (usually C Git)."""
    if sys.platform == "win32":  # support .exe, .bat and .cmd
        return ["cmd", "/c", "git"]
    return ["git"]


class _SubprocessPullStream(PullStream):
    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        assert proc.stdout is not None and proc.stdin is not None
        self.proc = proc
        self._closed = False
        self._stderr_data = b""
        self._stdout = io.BufferedReader(proc.stdout)  # type: ignore[arg-type]
        self.proto = Protocol(self._stdout.read, self._write)
        try:
            refs, capabilities = read_pkt_refs(self.proto.read_pkt_seq())
        except HangupException as exc:
            raise HangupException(self._stderr_lines()) from exc
        except BaseException:
            self._shutdown()
            raise
        super().__init__(refs, capabilities)

    def _write(self, data: bytes) -> None:
        assert self.proc.stdin is not None
        self.proc.stdin.write(data)
        self.proc.stdin.flush()

    def _stderr_lines(self) -> list[bytes]:
        self._shutdown()
        return self._stderr_data.splitlines()

    def negotiate(self, request: PullRequest) -> PullResponse:
        capabilities = self._negotiate_capabilities(request)
        try:
            self._write_request(self.proto, request, capabilities)
            packfile = self._read_response(self.proto, capabilities, self._stdout)
        except HangupException as exc:
            raise HangupException(self._stderr_lines()) from exc
        return PullResponse(set(capabilities), packfile)

    def _shutdown(self, timeout: int = 60) -> None:
        if self._closed:
            return
        self._closed = True
        assert self.proc.stdin is not None
        try:
            self.proc.stdin.close()
        except BrokenPipeError:
            # The remote has already exited.
            pass
        # Closing stdout first stops a remote that is still sending a pack.
        self._stdout.close()
        if self.proc.stderr:
            self._stderr_data = self.proc.stderr.read()
            self.proc.stderr.close()
        try:
            self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self.proc.kill()
            self.proc.wait()
            raise ProtocolError(
                f"Git subprocess did not terminate within {timeout} seconds; killed it."
            ) from e

    def abort(self) -> None:
        # Killing upload-pack closes its end of the pipe, so a blocked read
        # returns.
        if self.proc.poll() is None:
            self.proc.kill()

    def close(self) -> None:
        if not self._negotiated and not self._closed:
            # A flush-pkt instead of wants ends the conversation cleanly.
            try:
                self.proto.write_pkt_line(None)
            except ProtocolError:
                logger.debug("upload-pack exited before the closing flush-pkt")
        self._shutdown()


class SubprocessRemote(Remote):
    """A repository reached by running ``git upload-pack`` locally."""

    git_command: list[str] | None = None

    def __init__(self, path: str) -> None:
        """Initialize a SubprocessRemote.

        Args:
          path: Path of the repository (a working tree or a bare repository)
        """
        self.path = path

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"

    def start_pull(self) -> PullStream:
        git_command = self.git_command or find_git_command()
        argv = [*git_command, "upload-pack", self.path]
        logger.debug("Running %s", argv)
        try:
            p = subprocess.Popen(
                argv,
                bufsize=0,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ProtocolError(f"cannot run {argv[0]}: {exc}") from exc
        return _SubprocessPullStream(p)


def default_user_agent_string() -> str:
    """Return the default user agent string for repocache."""
    # Start user agent with "git/", because some hosts require this.
    return "git/" + agent_string().decode("ascii")


def default_urllib3_manager(
    config: Config | None,
    pool_manager_cls: type | None = None,
    proxy_manager_cls: type | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
) -> "urllib3.ProxyManager | urllib3.PoolManager":
    """Return urllib3 connection pool manager.

    Honour detected proxy configurations.

    Args:
      config: Git configuration; http.proxy, http.sslVerify, http.sslCAInfo,
        http.userAgent and http.extraHeader are honoured, including
        URL-scoped ``[http "<url>"]`` sections matching base_url
      pool_manager_cls: Pool manager class to use
      proxy_manager_cls: Proxy manager class to use
      base_url: URL the manager will be used for
      timeout: Timeout for HTTP requests in seconds

    Returns:
      Either pool_manager_cls (defaults to `urllib3.ProxyManager`) instance for
      proxy configurations, proxy_manager_cls
      (defaults to `urllib3.PoolManager`) instance otherwise
    """
    proxy_server: str | None = None
    user_agent: str | None = None
    ca_certs: str | None = None
    ssl_verify = True
    extra_headers: list[bytes] = []

    if config is not None:
        for section in urlmatch_http_sections(config, base_url):
            try:
                proxy_server = config.get(section, b"proxy").decode("utf-8")
            except KeyError:
                pass
            try:
                user_agent = config.get(section, b"useragent").decode("utf-8")
            except KeyError:
                pass
            ssl_verify_value = config.get_boolean(section, b"sslVerify")
            if ssl_verify_value is not None:
                ssl_verify = ssl_verify_value
            try:
                ca_certs = config.get(section, b"sslCAInfo").decode("utf-8")
            except KeyError:
                pass
            try:
                extra_headers.extend(config.get_multivar(section, b"extraHeader"))
            except KeyError:
                pass

    if proxy_server is None:
        for proxyname in ("https_proxy", "http_proxy", "all_proxy"):
            proxy_server = os.environ.get(proxyname)
            if proxy_server:
                break

    if user_agent is None:
        user_agent = default_user_agent_string()

    headers = {"User-agent": user_agent}
    for extra_header in dict.fromkeys(extra_headers):
        if b": " not in extra_header:
            logger.warning(
                "Ignoring invalid http.extraHeader value %r (missing ': ' separator)",
                extra_header,
            )
            continue
        header_name, header_value = extra_header.split(b": ", 1)
        headers[header_name.decode("utf-8")] = header_value.decode("utf-8")

    kwargs: dict[str, str | float | None] = {
        "ca_certs": ca_certs,
        "cert_reqs": "CERT_REQUIRED" if ssl_verify else "CERT_NONE",
    }
    if timeout is not None:
        kwargs["timeout"] = timeout

    import urllib3

    manager: urllib3.ProxyManager | urllib3.PoolManager
    if proxy_server:
        if proxy_manager_cls is None:
            proxy_manager_cls = urllib3.ProxyManager
        proxy_server_url = urlparse(proxy_server)
        if proxy_server_url.username is not None:
            proxy_headers = urllib3.make_headers(
                proxy_basic_auth=f"{proxy_server_url.username}:{proxy_server_url.password or ''}"
            )
        else:
            proxy_headers = {}
        manager = proxy_manager_cls(
            proxy_server, proxy_headers=proxy_headers, headers=headers, **kwargs
        )
    else:
        if pool_manager_cls is None:
            pool_manager_cls = urllib3.PoolManager
        manager = pool_manager_cls(headers=headers, **kwargs)

    return manager


class _ResponseReader(io.RawIOBase):
    """Raw binary stream over an urllib3 response.

    Transport errors while reading the body surface as ProtocolError.
    """

    def __init__(self, resp: "urllib3.BaseHTTPResponse") -> None:
        self._resp = resp

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: "bytearray | memoryview") -> int:  # type: ignore[override]
        import urllib3.exceptions

        try:
            data = self._resp.read(len(buffer))
        except urllib3.exceptions.HTTPError as error:
            raise ProtocolError(str(error)) from error
        n = len(data)
        buffer[:n] = data
        return n

    def close(self) -> None:
        if not self.closed:
            self._resp.release_conn()
        super().close()


class _HttpPullStream(PullStream):
    def __init__(
        self,
        remote: "HttpRemote",
        base_url: str,
        refs: dict[bytes, bytes],
        capabilities: set[bytes],
    ) -> None:
        super().__init__(refs, capabilities)
        self._remote = remote
        self._base_url = base_url
        self._reader: io.BufferedReader | None = None
        self._resp: "urllib3.BaseHTTPResponse | None" = None

    def negotiate(self, request: PullRequest) -> PullResponse:
        capabilities = self._negotiate_capabilities(request)
        req_data = io.BytesIO()
        self._write_request(Protocol(None, req_data.write), request, capabilities)  # type: ignore[arg-type]
        service = "git-upload-pack"
        result_content_type = f"application/x-{service}-result"
        resp = self._remote._http_request(
            urljoin(self._base_url, service),
            {
                "Content-Type": f"application/x-{service}-request",
                "Accept": result_content_type,
            },
            req_data.getvalue(),
        )
        reader = io.BufferedReader(_ResponseReader(resp))
        try:
            content_type = resp.headers.get("Content-Type")
            if not content_type or content_type.split(";")[0] != result_content_type:
                raise ProtocolError(f"Invalid content-type from server: {content_type}")
            packfile = self._read_response(
                Protocol(reader.read, None), capabilities, reader
            )
        except BaseException:
            reader.close()
            raise
        self._reader = reader
        self._resp = resp
        return PullResponse(set(capabilities), packfile)

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self._resp = None

    def abort(self) -> None:
        resp = self._resp
        if resp is None or resp.connection is None:
            return
        sock = resp.connection.sock
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("Shutting down connection failed: %s", exc)


class HttpRemote(Remote):
    """A repository reached over the smart HTTP protocol."""

    def __init__(
        self,
        base_url: str,
        config: Config | None = None,
        pool_manager: "urllib3.PoolManager | None" = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize an HttpRemote.

        Args:
          base_url: URL of the repository
          config: Git configuration for the HTTP transport
          pool_manager: urllib3 pool manager to use instead of the default one
          timeout: Timeout for HTTP requests in seconds
        """
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        if pool_manager is None:
            self.pool_manager = default_urllib3_manager(
                config, base_url=base_url, timeout=timeout
            )
        else:
            self.pool_manager = pool_manager
        parsed = urlparse(base_url)
        if parsed.username is not None:
            import urllib3.util

            credentials = f"{unquote(parsed.username)}:{unquote(parsed.password or '')}"
            self.pool_manager.headers.update(
                urllib3.util.make_headers(basic_auth=credentials)
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._base_url!r})"

    def _http_request(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> "urllib3.BaseHTTPResponse":
        """Perform HTTP request.

        Args:
          url: Request URL.
          headers: Optional custom headers to override defaults.
          data: Request body; a POST is sent when given, a GET otherwise.
        Returns: The response, with its body not yet read.
        Raises:
          ProtocolError
        """
        import urllib3.exceptions

        req_headers = dict(self.pool_manager.headers)
        if headers is not None:
            req_headers.update(headers)
        req_headers["Pragma"] = "no-cache"

        request_kwargs: dict[str, object] = {
            "headers": req_headers,
            "preload_content": False,
        }
        if self._timeout is not None:
            request_kwargs["timeout"] = self._timeout
        try:
            if data is None:
                resp = self.pool_manager.request("GET", url, **request_kwargs)  # type: ignore[arg-type]
            else:
                request_kwargs["body"] = data
                resp = self.pool_manager.request("POST", url, **request_kwargs)  # type: ignore[arg-type]
        except urllib3.exceptions.HTTPError as e:
            raise ProtocolError(str(e)) from e

        if resp.status == 404:
            resp.release_conn()
            raise ProtocolError(f"repository not found: {url}")
        if resp.status == 401:
            resp.release_conn()
            raise HTTPUnauthorized(resp.headers.get("WWW-Authenticate"), url)
        if resp.status != 200:
            resp.release_conn()
            raise ProtocolError(f"unexpected http resp {resp.status} for {url}")
        logger.debug("%s %s -> %d", "GET" if data is None else "POST", url, resp.status)
        return resp

    def _discover_references(self) -> tuple[dict[bytes, bytes], set[bytes], str]:
        tail = "info/refs?service=git-upload-pack"
        url = urljoin(self._base_url, tail)
        resp = self._http_request(url, {"Accept": "*/*"})
        base_url = self._base_url
        resp_url = resp.url
        if resp_url and resp_url != url:
            # Something changed (redirect!), so let's update the base URL
            if not resp_url.endswith(tail):
                resp.release_conn()
                raise ProtocolError(
                    f"Redirected from URL {url} to URL {resp_url} without {tail}"
                )
            base_url = urljoin(url, resp_url[: -len(tail)])
        reader = io.BufferedReader(_ResponseReader(resp))
        try:
            content_type = resp.headers.get("Content-Type")
            if not content_type or not content_type.startswith("application/x-git-"):
                raise ProtocolError(
                    f"{self._base_url} does not speak the smart HTTP protocol"
                )
            proto = Protocol(reader.read, None)  # type: ignore[arg-type]
            try:
                [pkt] = list(proto.read_pkt_seq())
            except ValueError as exc:
                raise ProtocolError("unexpected number of packets received") from exc
            if pkt.rstrip(b"\n") != b"# service=git-upload-pack":
                raise ProtocolError(f"unexpected first line {pkt!r} from smart server")
            refs, capabilities = read_pkt_refs(proto.read_pkt_seq())
        finally:
            reader.close()
        return refs, capabilities, base_url

    def start_pull(self) -> PullStream:
        refs, capabilities, base_url = self._discover_references()
        logger.debug("%s advertised %d refs", base_url, len(refs))
        return _HttpPullStream(self, base_url, refs, capabilities)


def get_remote(url: str, config: Config | None = None) -> Remote:
    """Obtain a remote for a URL or local path.

    Args:
      url: ``http://`` or ``https://`` URL, ``file://`` URL or local path
      config: Git configuration, used by HTTP remotes
    Raises:
      ValueError: for URL schemes that are not supported
    """
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        return HttpRemote(url, config=config)
    if parsed.scheme == "file":
        return SubprocessRemote(unquote(parsed.path))
    if "://" in url:
        raise ValueError(f"unsupported URL scheme {parsed.scheme!r} in {url}")
    return SubprocessRemote(url)


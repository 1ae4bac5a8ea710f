"""Backend tests: the real oras Registry talking to an in-memory registry adapter."""

from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from imgregistry.errors import RegistryProtocolError, TransportError
from imgregistry.name import NameOptions, new_digest, new_repository, new_tag
from imgregistry.remote import OrasRemote, RemoteOptions
from imgregistry.transport import HTTPTransport
from imgregistry.types import (
    ANONYMOUS,
    DOCKER_MANIFEST,
    OCI_INDEX,
    OCI_MANIFEST,
    Credential,
    Image,
    ImageIndex,
    sha256_digest,
)

REALM = "https://auth.example.com/token"
CHALLENGE = f'Bearer realm="{REALM}",service="reg.example.com",scope="repository:team/app:pull,push"'


def _response(
    request: requests.PreparedRequest,
    status: int,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = request.url
    response.request = request
    response.encoding = "utf-8"
    response.reason = "OK" if status < 400 else "Error"
    return response


def _body(request: requests.PreparedRequest) -> bytes:
    body = request.body or b""
    return body.encode("utf-8") if isinstance(body, str) else body


class _MemoryRegistry:
    """Just enough of the distribution and token APIs to exercise the backend."""

    def __init__(self) -> None:
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.tags: dict[str, list[str]] = {}
        self.requests: list[tuple[str, str, CaseInsensitiveDict]] = []
        self.page_size = 2
        self.required_token: str | None = None
        self.challenge: str | None = CHALLENGE
        self.refresh_token = "refresh-abc"
        self.basic_user: tuple[str, str] | None = None
        self.reject_https = False
        self.status_override: int | None = None
        self._uploads = 0

    def put_manifest(self, repo: str, ref: str, media_type: str, body: bytes) -> None:
        digest = sha256_digest(body)
        self.manifests[(repo, ref)] = (media_type, body)
        self.manifests[(repo, digest)] = (media_type, body)
        if not ref.startswith("sha256:"):
            names = self.tags.setdefault(repo, [])
            if ref not in names:
                names.append(ref)

    def registry_requests(self) -> list[tuple[str, str, CaseInsensitiveDict]]:
        return [entry for entry in self.requests if "/v2/" in entry[1] and not entry[1].endswith("/v2/")]

    def realm_requests(self) -> list[tuple[str, str, CaseInsensitiveDict]]:
        return [entry for entry in self.requests if entry[1].startswith(REALM)]

    def handle(self, request: requests.PreparedRequest) -> requests.Response:
        self.requests.append((request.method, request.url, request.headers.copy()))
        parts = urlsplit(request.url)
        if parts.scheme == "https" and self.reject_https:
            raise requests.exceptions.SSLError("wrong version number")
        if request.url.startswith(REALM):
            return self._token(request)
        if parts.path == "/v2/":
            return _response(request, 200, b"{}")
        if self.status_override is not None:
            return _response(request, self.status_override, b'{"errors":[{"code":"UNKNOWN"}]}')
        if self.required_token is not None:
            if request.headers.get("Authorization") != f"Bearer {self.required_token}":
                headers = {"Www-Authenticate": self.challenge} if self.challenge else {}
                return _response(request, 401, b'{"errors":[{"code":"UNAUTHORIZED"}]}', headers)
        return self._distribution(request, parts.path[len("/v2/") :], parts.query)

    def _token(self, request: requests.PreparedRequest) -> requests.Response:
        if request.method == "POST":
            form = parse_qs(_body(request).decode("utf-8"))
            if form.get("grant_type") == ["refresh_token"] and form.get("refresh_token") == [self.refresh_token]:
                return _response(request, 200, json.dumps({"access_token": self.required_token}).encode("utf-8"))
            return _response(request, 400, b'{"error":"invalid_grant"}')
        if self.basic_user is not None:
            user, password = self.basic_user
            expected = "Basic " + base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("utf-8")
            if request.headers.get("Authorization") == expected:
                return _response(request, 200, json.dumps({"token": self.required_token}).encode("utf-8"))
        return _response(request, 200, b'{"token":"anonymous"}')

    def _distribution(self, request: requests.PreparedRequest, path: str, query: str) -> requests.Response:
        method = request.method
        if "/manifests/" in path:
            repo, ref = path.split("/manifests/", 1)
            return self._manifest(request, repo, ref)
        if "/blobs/uploads/" in path:
            repo, _ = path.split("/blobs/uploads/", 1)
            if method == "POST":
                self._uploads += 1
                return _response(request, 202, headers={"Location": f"/v2/{repo}/blobs/uploads/{self._uploads}?_state=abc"})
            params = parse_qs(query)
            assert params["_state"] == ["abc"]
            digest = params["digest"][0]
            data = _body(request)
            if sha256_digest(data) != digest:
                return _response(request, 400, b'{"errors":[{"code":"DIGEST_INVALID"}]}')
            self.blobs[(repo, digest)] = data
            return _response(request, 201)
        if "/blobs/" in path:
            repo, digest = path.split("/blobs/", 1)
            blob = self.blobs.get((repo, digest))
            if blob is None:
                return _response(request, 404, b'{"errors":[{"code":"BLOB_UNKNOWN"}]}')
            return _response(request, 200, b"" if method == "HEAD" else blob)
        if path.endswith("/tags/list"):
            repo = path[: -len("/tags/list")]
            names = sorted(self.tags.get(repo, []))
            last = parse_qs(query).get("last", [None])[0]
            if last is not None:
                names = [name for name in names if name > last]
            page, rest = names[: self.page_size], names[self.page_size :]
            extra = {}
            if rest:
                extra["Link"] = f'</v2/{repo}/tags/list?n={self.page_size}&last={page[-1]}>; rel="next"'
            return _response(request, 200, json.dumps({"name": repo, "tags": page}).encode("utf-8"), extra)
        return _response(request, 404)

    def _manifest(self, request: requests.PreparedRequest, repo: str, ref: str) -> requests.Response:
        if request.method == "PUT":
            self.put_manifest(repo, ref, request.headers["Content-Type"], _body(request))
            return _response(request, 201)
        stored = self.manifests.get((repo, ref))
        if stored is None:
            return _response(request, 404, b'{"errors":[{"code":"MANIFEST_UNKNOWN"}]}')
        media_type, body = stored
        headers = {"Content-Type": media_type, "Docker-Content-Digest": sha256_digest(body)}
        return _response(request, 200, b"" if request.method == "HEAD" else body, headers)


class _MemoryAdapter(BaseAdapter):
    def __init__(self, memory: _MemoryRegistry) -> None:
        super().__init__()
        self.memory = memory

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        return self.memory.handle(request)

    def close(self) -> None:
        pass


class _CountingKeychain:
    def __init__(self, credential: Credential = ANONYMOUS) -> None:
        self.credential = credential
        self.hosts: list[str] = []

    def resolve(self, host: str) -> Credential:
        self.hosts.append(host)
        return self.credential


@pytest.fixture()
def memory() -> _MemoryRegistry:
    return _MemoryRegistry()


@pytest.fixture()
def keychain() -> _CountingKeychain:
    return _CountingKeychain()


@pytest.fixture()
def transport(memory) -> HTTPTransport:
    return HTTPTransport(adapter=_MemoryAdapter(memory), verify_certs=True)


@pytest.fixture()
def options(transport, keychain) -> RemoteOptions:
    return RemoteOptions(transport=transport, keychain=keychain)


@pytest.fixture()
def backend() -> OrasRemote:
    return OrasRemote()


def _options_with(transport: HTTPTransport, credential: Credential) -> RemoteOptions:
    return RemoteOptions(transport=transport, keychain=_CountingKeychain(credential))


def _image(seed: str) -> Image:
    return Image.from_blobs(
        json.dumps({"architecture": "amd64", "os": "linux", "seed": seed}).encode("utf-8"),
        [f"layer-{seed}".encode("utf-8")],
    )


def _methods(memory: _MemoryRegistry) -> list[str]:
    return [method for method, _, _ in memory.registry_requests()]


def test_write_image_uploads_blobs_then_manifest(backend, memory, options, keychain) -> None:
    image = _image("one")
    backend.write_image(new_tag("reg.example.com/team/app:v1"), image, options)

    for descriptor in image.referenced_blobs():
        assert memory.blobs[("team/app", descriptor.digest)] == image.blob(descriptor.digest)
    assert memory.manifests[("team/app", "v1")] == (OCI_MANIFEST, image.manifest)
    assert keychain.hosts == ["reg.example.com"]
    assert _methods(memory) == ["HEAD", "POST", "PUT", "HEAD", "POST", "PUT", "PUT"]


def test_existing_blobs_are_not_uploaded_again(backend, memory, options) -> None:
    image = _image("one")
    backend.write_image(new_tag("reg.example.com/team/app:v1"), image, options)
    memory.requests.clear()
    backend.write_image(new_tag("reg.example.com/team/app:v2"), image, options)
    assert _methods(memory) == ["HEAD", "HEAD", "PUT"]


def test_docker_manifest_is_written_byte_for_byte(backend, memory, options) -> None:
    image = _image("docker")
    docker = Image(manifest=image.manifest, media_type=DOCKER_MANIFEST, blobs=image.blobs)
    backend.write_image(new_tag("reg.example.com/team/app:v1"), docker, options)
    assert memory.manifests[("team/app", "v1")] == (DOCKER_MANIFEST, image.manifest)


def test_dotted_repository_path_stays_on_registry_host(backend, memory, options) -> None:
    backend.write_image(new_tag("reg.example.com/my.org/app:v1"), _image("one"), options)
    assert all(urlsplit(url).netloc == "reg.example.com" for _, url, _ in memory.requests)
    assert ("my.org/app", "v1") in memory.manifests


def test_get_reports_descriptor(backend, memory, options) -> None:
    image = _image("one")
    memory.put_manifest("team/app", "v1", OCI_MANIFEST, image.manifest)
    remote = backend.get(new_tag("reg.example.com/team/app:v1"), options)
    assert remote.descriptor.digest == image.digest
    assert remote.descriptor.size == len(image.manifest)
    assert remote.descriptor.media_type == OCI_MANIFEST
    assert remote.manifest == image.manifest
    _, _, headers = memory.registry_requests()[0]
    assert OCI_INDEX in headers["Accept"]


def test_get_rejects_digest_mismatch(backend, memory, options) -> None:
    image = _image("one")
    wrong = "sha256:" + "0" * 64
    memory.manifests[("team/app", wrong)] = (OCI_MANIFEST, image.manifest)
    with pytest.raises(RegistryProtocolError):
        backend.get(new_digest(f"reg.example.com/team/app@{wrong}"), options)


def test_image_fetches_blobs_lazily(backend, memory, options) -> None:
    source = _image("lazy")
    backend.write_image(new_tag("reg.example.com/team/app:v1"), source, options)
    memory.requests.clear()

    pulled = backend.image(new_tag("reg.example.com/team/app:v1"), options)
    assert _methods(memory) == ["GET"]
    layer = pulled.layers()[0]
    assert pulled.blob(layer.digest) == b"layer-lazy"
    assert pulled.config() == source.config()


def test_corrupt_blob_is_protocol_error(backend, memory, options) -> None:
    source = _image("lazy")
    backend.write_image(new_tag("reg.example.com/team/app:v1"), source, options)
    layer = source.layers()[0]
    memory.blobs[("team/app", layer.digest)] = b"tampered"

    pulled = backend.image(new_tag("reg.example.com/team/app:v1"), options)
    with pytest.raises(RegistryProtocolError):
        pulled.blob(layer.digest)


def test_image_resolves_platform_from_index(backend, memory, options) -> None:
    amd = _image("amd64")
    arm = _image("arm64")
    index = ImageIndex.from_children(
        [arm, amd],
        platforms=[{"os": "linux", "architecture": "arm64"}, {"os": "linux", "architecture": "amd64"}],
    )
    backend.write_index(new_tag("reg.example.com/team/app:multi"), index, options)
    pulled = backend.image(new_tag("reg.example.com/team/app:multi"), options)
    assert pulled.digest == amd.digest


def test_write_index_pushes_children_first(backend, memory, options) -> None:
    children = [_image("a"), _image("b")]
    index = ImageIndex.from_children(children)
    backend.write_index(new_tag("reg.example.com/team/app:multi"), index, options)

    for child in children:
        assert memory.manifests[("team/app", child.digest)][1] == child.manifest
    assert memory.manifests[("team/app", "multi")] == (OCI_INDEX, index.manifest)
    last_method, last_url, _ = memory.requests[-1]
    assert last_method == "PUT" and last_url.endswith("/manifests/multi")


def test_index_round_trips_children(backend, memory, options) -> None:
    children = [_image("a"), _image("b")]
    backend.write_index(new_tag("reg.example.com/team/app:multi"), ImageIndex.from_children(children), options)
    remote_index = backend.index(new_tag("reg.example.com/team/app:multi"), options)
    descriptors = remote_index.manifests()
    assert [desc.digest for desc in descriptors] == [child.digest for child in children]
    child = remote_index.child(descriptors[1])
    assert isinstance(child, Image)
    assert child.manifest == children[1].manifest


def test_index_on_single_image_is_protocol_error(backend, memory, options) -> None:
    memory.put_manifest("team/app", "v1", OCI_MANIFEST, _image("one").manifest)
    with pytest.raises(RegistryProtocolError):
        backend.index(new_tag("reg.example.com/team/app:v1"), options)


def test_tag_puts_source_manifest_at_destination(backend, memory, options) -> None:
    image = _image("one")
    backend.write_image(new_tag("reg.example.com/team/app:v1"), image, options)
    remote = backend.get(new_digest(f"reg.example.com/team/app@{image.digest}"), options)
    backend.tag(new_tag("reg.example.com/team/app:stable"), remote, options)
    assert memory.manifests[("team/app", "stable")] == (OCI_MANIFEST, image.manifest)


def test_list_tags_follows_pagination(backend, memory, options) -> None:
    for name in ("v1", "v2", "v3", "latest", "beta"):
        memory.put_manifest("team/app", name, OCI_MANIFEST, _image(name).manifest)
    tags = backend.list_tags(new_repository("reg.example.com/team/app"), options)
    assert tags == ["beta", "latest", "v1", "v2", "v3"]
    assert _methods(memory) == ["GET", "GET", "GET"]


def test_list_tags_page_error_is_protocol_error(backend, memory, options) -> None:
    memory.status_override = 404
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.list_tags(new_repository("reg.example.com/team/app"), options)
    assert excinfo.value.status_code == 404


def test_missing_manifest_is_protocol_error(backend, options) -> None:
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.get(new_tag("reg.example.com/team/app:nope"), options)
    assert excinfo.value.status_code == 404
    assert "MANIFEST_UNKNOWN" in str(excinfo.value)


def test_server_error_is_not_retried_by_oras(backend, memory, options, monkeypatch) -> None:
    def no_sleep(seconds):
        raise AssertionError("oras retry loop must be bypassed")

    monkeypatch.setattr("oras.decorator.time.sleep", no_sleep)
    memory.status_override = 500
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.get(new_tag("reg.example.com/team/app:v1"), options)
    assert excinfo.value.status_code == 500
    assert len(memory.registry_requests()) == 1


def test_network_failure_is_transport_error(backend, memory, options) -> None:
    def broken(request):
        raise requests.ConnectionError("connection refused")

    memory.handle = broken
    with pytest.raises(TransportError) as excinfo:
        backend.get(new_tag("reg.example.com/team/app:v1"), options)
    assert excinfo.value.host == "reg.example.com"


def test_unanswerable_auth_challenge_is_protocol_error(backend, memory, options) -> None:
    memory.required_token = "access-xyz"
    memory.challenge = None
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.get(new_tag("reg.example.com/team/app:v1"), options)
    assert excinfo.value.status_code == 401
    assert "reg.example.com" in str(excinfo.value)


def test_unauthorized_blob_check_is_protocol_error(backend, memory, options) -> None:
    memory.required_token = "access-xyz"
    memory.challenge = None
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.write_image(new_tag("reg.example.com/team/app:v1"), _image("one"), options)
    assert excinfo.value.status_code == 401


def test_basic_credentials_are_exchanged_at_token_realm(backend, memory, transport) -> None:
    memory.required_token = "access-xyz"
    memory.basic_user = ("alice", "s3cret")
    keychain = _CountingKeychain(Credential(username="alice", password="s3cret"))
    options = RemoteOptions(transport=transport, keychain=keychain)
    backend.write_index(
        new_tag("reg.example.com/team/app:multi"),
        ImageIndex.from_children([_image("a"), _image("b")]),
        options,
    )
    assert ("team/app", "multi") in memory.manifests
    assert keychain.hosts == ["reg.example.com"]
    method, _, headers = memory.realm_requests()[0]
    assert method == "GET"
    assert headers["Authorization"].startswith("Basic ")


def test_registry_token_is_sent_as_bearer(backend, memory, transport) -> None:
    memory.required_token = "access-xyz"
    options = _options_with(transport, Credential(token="access-xyz"))
    memory.put_manifest("team/app", "v1", OCI_MANIFEST, _image("one").manifest)

    assert backend.list_tags(new_repository("reg.example.com/team/app"), options) == ["v1"]
    _, _, headers = memory.registry_requests()[0]
    assert headers["Authorization"] == "Bearer access-xyz"
    assert memory.realm_requests() == []


def test_identity_token_is_exchanged_for_access_token(backend, memory, transport) -> None:
    memory.required_token = "access-xyz"
    options = _options_with(transport, Credential(identity_token="refresh-abc"))
    memory.put_manifest("team/app", "v1", OCI_MANIFEST, _image("one").manifest)

    assert backend.list_tags(new_repository("reg.example.com/team/app"), options) == ["v1"]
    realm = memory.realm_requests()
    assert [method for method, _, _ in realm] == ["POST"]
    for _, _, headers in memory.registry_requests():
        assert headers.get("Authorization") != "Bearer refresh-abc"


def test_rejected_identity_token_is_protocol_error(backend, memory, transport) -> None:
    memory.required_token = "access-xyz"
    memory.refresh_token = "something-else"
    options = _options_with(transport, Credential(identity_token="refresh-abc"))
    with pytest.raises(RegistryProtocolError) as excinfo:
        backend.list_tags(new_repository("reg.example.com/team/app"), options)
    assert "identity token exchange" in str(excinfo.value)


def test_secure_registry_never_falls_back_to_http(backend, memory, options) -> None:
    memory.reject_https = True
    with pytest.raises(TransportError):
        backend.get(new_tag("reg.example.com/team/app:v1"), options)
    assert all(url.startswith("https://") for _, url, _ in memory.requests)


def test_insecure_registry_prefers_https(backend, memory, options) -> None:
    ref = new_tag("plain.example.com/app:v1", NameOptions(insecure=True))
    backend.write_image(ref, _image("one"), options)
    assert all(url.startswith("https://plain.example.com/v2/") for _, url, _ in memory.requests)


def test_insecure_registry_falls_back_to_http(backend, memory, options) -> None:
    memory.reject_https = True
    ref = new_tag("plain.example.com/app:v1", NameOptions(insecure=True))
    backend.write_image(ref, _image("one"), options)

    assert memory.requests[0][1] == "https://plain.example.com/v2/"
    assert all(url.startswith("http://plain.example.com/v2/") for _, url, _ in memory.requests[1:])
    assert ("app", "v1") in memory.manifests


def test_explicit_http_reference_skips_https(backend, memory, options) -> None:
    ref = new_tag("http://plain.example.com/app:v1", NameOptions(insecure=True))
    backend.write_image(ref, _image("one"), options)
    assert all(url.startswith("http://plain.example.com/v2/app/") for _, url, _ in memory.requests)

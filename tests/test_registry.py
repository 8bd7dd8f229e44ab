import io

import pytest
import requests.exceptions
import requests.structures

import ocistash.core as oc
import ocistash.filesystem as fs
import ocistash.registry as rg

from conftest import Fake_Response


REG = "https://reg.example.com"
CHALLENGE = ('Bearer realm="https://auth.example.com/token",'
             'service="reg.example.com",scope="repository:foo:pull"')
TOKEN_URL = rg.HTTP.token_url({ "realm": "https://auth.example.com/token",
                                "service": "reg.example.com",
                                "scope": "repository:foo:pull" })
MANIFEST = { "schemaVersion": 2,
             "mediaType": rg.TYPES_MANIFEST["docker2"],
             "config": { "digest": "sha256:" + "c" * 64 },
             "layers": [{ "digest": "sha256:" + "1" * 64 }] }
DIGEST_AMD64 = "sha256:" + "a" * 64
DIGEST_ARM64 = "sha256:" + "b" * 64
INDEX = { "schemaVersion": 2,
          "mediaType": rg.TYPES_INDEX["oci1"],
          "manifests": [
             { "digest": DIGEST_AMD64,
               "platform": { "os": "linux", "architecture": "amd64" } },
             { "digest": DIGEST_ARM64,
               "platform": { "os": "linux", "architecture": "arm64" } } ] }


def manifest_url(repo, ref):
   return "%s/v2/%s/manifests/%s" % (REG, repo, ref)

def unauthorized():
   return Fake_Response(401, b"", { "WWW-Authenticate": CHALLENGE })

def manifest_ok(manifest=MANIFEST, type_=rg.TYPES_MANIFEST["docker2"]):
   return Fake_Response(200, manifest, { "Content-Type": type_ })


## Reference and platform parsing ##

@pytest.mark.parametrize("ref, expected", [
   ("alpine",
    (None, oc.REGISTRY_URL_DEFAULT, oc.INDEX_URL_DEFAULT, "library/alpine")),
   ("library/alpine",
    (None, oc.REGISTRY_URL_DEFAULT, oc.INDEX_URL_DEFAULT, "library/alpine")),
   ("foo/bar",
    (None, oc.REGISTRY_URL_DEFAULT, oc.INDEX_URL_DEFAULT, "foo/bar")),
   ("docker.io/ubuntu",
    ("docker.io", oc.REGISTRY_URL_DEFAULT, oc.INDEX_URL_DEFAULT,
     "library/ubuntu")),
   ("index.docker.com/ubuntu",
    ("index.docker.com", "https://index.docker.com",
     "https://index.docker.com", "library/ubuntu")),
   ("quay.io/coreos/etcd",
    ("quay.io", "https://quay.io", "https://quay.io", "coreos/etcd")),
   ("ghcr.io/busybox",
    ("ghcr.io", "https://ghcr.io", "https://ghcr.io", "busybox")),
   ("my.name", (None, oc.REGISTRY_URL_DEFAULT, oc.INDEX_URL_DEFAULT,
                "library/my.name")),
])
def test_parse_reference(config, ref, expected):
   assert rg.parse_reference(ref, config) == expected

def test_parse_reference_default_registry_from_config(tmp_path):
   c = oc.Config(tmp_path, registry_url="https://mirror.example.com",
                 index_url="https://mirror.example.com")
   assert rg.parse_reference("alpine", c) \
          == (None, "https://mirror.example.com",
              "https://mirror.example.com", "library/alpine")

def test_manifest_select():
   assert rg.manifest_select(INDEX, "linux/arm64") == DIGEST_ARM64
   assert rg.manifest_select(INDEX, "LINUX/ARM64") == DIGEST_ARM64
   assert rg.manifest_select(INDEX, "linux") == DIGEST_AMD64
   assert rg.manifest_select(INDEX, "android/arm64") == DIGEST_ARM64
   assert rg.manifest_select(INDEX, "darwin/amd64") is None
   assert rg.manifest_select(INDEX, "linux/arm64/v8") is None
   assert rg.manifest_select({}, "linux") is None


## HTTP ##

def test_v2_p(config, session):
   session.add(REG + "/v2/", Fake_Response(200, b"{}"))
   assert rg.HTTP(config, REG).v2_p()

def test_v2_p_unauthorized_counts(config, session):
   session.add(REG + "/v2/", Fake_Response(401, b""))
   assert rg.HTTP(config, REG).v2_p()

def test_v2_p_not_found(config, session):
   assert not rg.HTTP(config, REG).v2_p()

def test_v2_p_connection_refused(config, session):
   session.add(REG + "/v2/", requests.exceptions.ConnectionError("refused"))
   assert not rg.HTTP(config, REG).v2_p()

def test_tls_verify_passed_to_session(tmp_path, session):
   c = oc.Config(tmp_path, tls_verify=False)
   rg.HTTP(c, REG).v2_p()
   assert session.verify is False

def test_manifest_accept_header(config, session):
   session.add(manifest_url("foo", "1"), manifest_ok())
   rg.HTTP(config, REG).manifest_get("foo", "1")
   accept = session.calls[0][2]["Accept"]
   for type_ in list(rg.TYPES_MANIFEST.values()) \
                + list(rg.TYPES_INDEX.values()):
      assert type_ in accept

def test_auth_token_then_retry(config, session):
   session.add(manifest_url("foo", "1"), unauthorized(), manifest_ok())
   session.add(TOKEN_URL, Fake_Response(200, { "token": "abcdefgh12345678" }))
   http = rg.HTTP(config, REG)
   assert http.manifest_get("foo", "1") == (200, MANIFEST)
   assert session.urls() == [manifest_url("foo", "1"),
                             TOKEN_URL,
                             manifest_url("foo", "1")]
   assert "Authorization" not in session.calls[0][2]
   assert "Authorization" not in session.calls[1][2]
   assert session.calls[2][2]["Authorization"] == "Bearer abcdefgh12345678"
   assert len(http.tokens) == 1 and TOKEN_URL in http.tokens
   # Later requests use the token straight away.
   assert http.manifest_get("foo", "1") == (200, MANIFEST)
   assert len(session.calls) == 4
   assert session.calls[3][2]["Authorization"] == "Bearer abcdefgh12345678"

def test_auth_access_token_field(config, session):
   session.add(manifest_url("foo", "1"), unauthorized(), manifest_ok())
   session.add(TOKEN_URL, Fake_Response(200, { "access_token": "x" * 20 }))
   assert rg.HTTP(config, REG).manifest_get("foo", "1")[0] == 200

def test_auth_token_failure_gives_original_401(config, session):
   session.add(manifest_url("foo", "1"), unauthorized())
   session.add(TOKEN_URL, Fake_Response(403, b"denied"))
   http = rg.HTTP(config, REG)
   assert http.manifest_get("foo", "1") == (401, None)
   assert isinstance(http.auth, rg.Auth_None)

def test_auth_still_unauthorized(config, session):
   session.add(manifest_url("foo", "1"), unauthorized())
   session.add(TOKEN_URL, Fake_Response(200, { "token": "t" * 20 }))
   http = rg.HTTP(config, REG)
   (status, _) = http.manifest_get("foo", "1")
   assert status == 401
   assert len(session.calls) == 3   # exactly one retry
   assert isinstance(http.auth, rg.Auth_None)

def test_auth_not_bearer(config, session):
   session.add(manifest_url("foo", "1"),
               Fake_Response(401, b"", { "WWW-Authenticate": 'Basic realm="x"' }))
   assert rg.HTTP(config, REG).manifest_get("foo", "1") == (401, None)
   assert len(session.calls) == 1

def test_authenticate_uses_cached_token(config, session):
   http = rg.HTTP(config, REG)
   http.session_init_maybe()
   http.tokens.put(TOKEN_URL, "cached-token-0123")
   auth = http.authenticate(unauthorized())
   assert auth == rg.Auth_Bearer("cached-token-0123")
   assert session.calls == []

def test_authenticate_evicts_rejected_token(config, session):
   session.add(TOKEN_URL, Fake_Response(200, { "token": "fresh-token-0123" }))
   http = rg.HTTP(config, REG)
   http.session_init_maybe()
   http.tokens.put(TOKEN_URL, "stale-token-0123")
   http.auth = rg.Auth_Bearer("stale-token-0123")
   auth = http.authenticate(unauthorized())
   assert auth == rg.Auth_Bearer("fresh-token-0123")
   assert http.tokens.get(TOKEN_URL) == "fresh-token-0123"

def test_token_cache():
   tc = rg.Token_Cache()
   assert "u" not in tc
   tc.put("u", "t")
   assert "u" in tc and tc.get("u") == "t" and len(tc) == 1
   tc.evict("u")
   tc.evict("u")
   assert tc.get("u") is None and len(tc) == 0

def test_redirect_drops_authorization(config, session, tmp_path):
   blob_url = REG + "/v2/foo/blobs/sha256:abc"
   cdn_url = "https://cdn.example.com/blob?sig=1"
   session.add(blob_url, Fake_Response(307, b"", { "Location": cdn_url }))
   session.add(cdn_url, Fake_Response(200, b"layer data"))
   http = rg.HTTP(config, REG)
   http.auth = rg.Auth_Bearer("secret-token-0123")
   out = fs.Path(tmp_path) // "blob"
   assert http.blob_to_file("foo", "sha256:abc", out)
   assert out.file_read_all(text=False) == b"layer data"
   assert session.urls() == [blob_url, cdn_url]
   assert session.calls[0][2]["Authorization"].startswith("Bearer ")
   assert "Authorization" not in session.calls[1][2]

def test_redirect_relative_location(config, session):
   session.add(REG + "/old", Fake_Response(301, b"", { "Location": "/new" }))
   session.add(REG + "/new", Fake_Response(200, b"ok"))
   http = rg.HTTP(config, REG)
   http.session_init_maybe()
   assert http.request_raw("GET", REG + "/old").status_code == 200

def test_redirect_hop_limit(config, session):
   session.add(REG + "/loop", Fake_Response(302, b"", { "Location": "/loop" }))
   http = rg.HTTP(config, REG)
   http.session_init_maybe()
   res = http.request_raw("GET", REG + "/loop")
   assert res.status_code == 302
   assert len(session.calls) == config.redirects + 1

def test_blob_to_file_not_found(config, session, tmp_path):
   http = rg.HTTP(config, REG)
   assert not http.blob_to_file("foo", "sha256:abc",
                                fs.Path(tmp_path) // "blob")

def test_manifest_index_platform(config, session):
   session.add(manifest_url("library/alpine", "latest"),
               manifest_ok(INDEX, rg.TYPES_INDEX["oci1"]))
   arm = dict(MANIFEST, annotations={ "arch": "arm64" })
   session.add(manifest_url("library/alpine", DIGEST_ARM64), manifest_ok(arm))
   session.add(manifest_url("library/alpine", DIGEST_AMD64),
               manifest_ok(MANIFEST))
   http = rg.HTTP(config, REG)
   assert http.manifest_get("library/alpine", "latest", "linux/arm64") \
          == (200, arm)
   assert http.manifest_get("library/alpine", "latest", "linux") \
          == (200, MANIFEST)
   assert http.manifest_get("library/alpine", "latest", "darwin/amd64") \
          == (200, None)
   assert http.manifest_get("library/alpine", "latest") == (200, INDEX)

def test_manifest_docker_list(config, session):
   session.add(manifest_url("foo", "1"),
               manifest_ok(INDEX, rg.TYPES_INDEX["docker2"]))
   session.add(manifest_url("foo", DIGEST_AMD64), manifest_ok())
   assert rg.HTTP(config, REG).manifest_get("foo", "1", "linux/amd64") \
          == (200, MANIFEST)

def test_manifest_unparseable(config, session):
   session.add(manifest_url("foo", "1"), Fake_Response(200, b"{nope"))
   assert rg.HTTP(config, REG).manifest_get("foo", "1") == (200, None)

def test_manifest_no_response(config, session):
   session.add(manifest_url("foo", "1"),
               requests.exceptions.ConnectionError("refused"))
   assert rg.HTTP(config, REG).manifest_get("foo", "1") == (None, None)

def test_rate_limit_logged(monkeypatch):
   log = io.StringIO()
   monkeypatch.setattr(oc, "log_fp", log)
   monkeypatch.setattr(oc, "verbose", 1)
   rg.HTTP.headers_log(requests.structures.CaseInsensitiveDict(
      { "RateLimit-Limit": "100;w=21600",
        "RateLimit-Remaining": "76;w=21600",
        "Docker-RateLimit-Source": "192.0.2.1" }))
   assert "76 pulls left of 100 per 6.0 hours (192.0.2.1)" in log.getvalue()

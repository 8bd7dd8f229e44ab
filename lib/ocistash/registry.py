import re
import urllib.parse
import urllib.request

import requests
import requests.auth
import requests.exceptions

from . import core as oc


## Constants ##

# Content types for some stuff we care about.
# See: https://github.com/opencontainers/image-spec/blob/main/media-types.md
TYPES_MANIFEST = \
   {"docker1": "application/vnd.docker.distribution.manifest.v1+prettyjws",
    "docker2": "application/vnd.docker.distribution.manifest.v2+json",
    "oci1":    "application/vnd.oci.image.manifest.v1+json"}
TYPES_INDEX = \
   {"docker2": "application/vnd.docker.distribution.manifest.list.v2+json",
    "oci1":    "application/vnd.oci.image.index.v1+json"}

# Accept header for manifest requests. Everything we can parse, so the
# registry doesn’t try to convert to something we didn’t ask for.
ACCEPT_MANIFEST = ", ".join((TYPES_MANIFEST["docker2"],
                             TYPES_MANIFEST["docker1"],
                             "application/json",
                             TYPES_INDEX["docker2"],
                             TYPES_MANIFEST["oci1"],
                             TYPES_INDEX["oci1"]))

# Registry host aliases that mean Docker Hub, matched as substrings.
HUB_ALIASES = ("docker.io", "docker.com")


## Functions ##

def manifest_select(index, platform):
   """Return the digest of the first manifest in image index (or Docker
      manifest list) index whose platform matches platform, a string
      “os[/arch[/variant]]”, or None if nothing matches. Empty fields in
      platform match anything.

        >>> idx = { "manifests": [
        ...   { "digest": "sha256:a",
        ...     "platform": { "os": "linux", "architecture": "amd64" } },
        ...   { "digest": "sha256:b",
        ...     "platform": { "os": "linux", "architecture": "arm",
        ...                   "variant": "v7" } } ] }
        >>> manifest_select(idx, "linux/arm/v7")
        'sha256:b'
        >>> manifest_select(idx, "linux")
        'sha256:a'
        >>> manifest_select(idx, "darwin/amd64") is None
        True"""
   (os_, arch, variant) = platform_parse(platform)
   if (not isinstance(index, dict)):
      return None
   for m in index.get("manifests") or []:
      p = m.get("platform") or {}
      if (os_ and (p.get("os") or "").lower() != os_):
         continue
      if (arch and (p.get("architecture") or "").lower() != arch):
         continue
      if (variant and (p.get("variant") or "").lower() != variant):
         continue
      oc.VERBOSE("platform %s matches manifest: %s" % (platform, m.get("digest")))
      return m.get("digest")
   return None

def parse_reference(imagerepo, config):
   """Split imagerepo, e.g. “quay.io/foo/bar”, into the registry host, the
      registry and index URLs to talk to, and the path of the repository
      within the registry. Return a tuple (registry, registry_url, index_url,
      remoterepo); registry is None if imagerepo doesn’t name one.

      The first component is a registry host if it contains a dot or a port
      and isn’t the only component. Docker Hub’s “official” images live under
      “library/”, so a one-component path gets that prefix, unless the
      registry is given and isn’t Docker Hub.

        >>> c = oc.Config("/nonexistent")
        >>> parse_reference("localhost:5000/foo", c)
        ('localhost:5000', 'https://localhost:5000', 'https://localhost:5000', 'foo')
        >>> parse_reference("alpine", c)
        (None, 'https://registry-1.docker.io', 'https://hub.docker.com', 'library/alpine')
        >>> parse_reference("quay.io/foo", c)
        ('quay.io', 'https://quay.io', 'https://quay.io', 'foo')
        >>> parse_reference("docker.io/alpine", c)
        ('docker.io', 'https://registry-1.docker.io', 'https://hub.docker.com', 'library/alpine')"""
   components = imagerepo.split("/")
   registry = None
   if (    len(components) >= 2
       and ("." in components[0] or ":" in components[0])):
      registry = components.pop(0)
   if (components[0] != "library" and len(components) == 1):
      if (registry is None or any(a in registry for a in HUB_ALIASES)):
         components.insert(0, "library")
   remoterepo = "/".join(components)
   if (registry is None):
      registry_url = config.registry_url
      index_url = config.index_url
   elif (registry in config.registries):
      (registry_url, index_url) = config.registries[registry]
   else:
      registry_url = registry if "://" in registry else "https://" + registry
      index_url = registry_url
   oc.VERBOSE("reference %s: registry %s, remote repository %s"
              % (imagerepo, registry_url, remoterepo))
   return (registry, registry_url, index_url, remoterepo)

def platform_parse(platform):
   """Return a tuple (os, arch, variant) parsed from platform string, lower
      case, with missing fields empty. Android counts as Linux.

        >>> platform_parse("Linux/ARM64")
        ('linux', 'arm64', '')
        >>> platform_parse("android/arm/v7")
        ('linux', 'arm', 'v7')
        >>> platform_parse(None)
        ('', '', '')"""
   if (not platform):
      return ("", "", "")
   parts = (platform.lower().split("/") + ["", ""])[:3]
   if (parts[0] == "android"):
      parts[0] = "linux"
   return tuple(parts)


## Classes ##

class Auth(requests.auth.AuthBase):

   # Every registry request has an “authorization object”. This starts as no
   # authentication at all. If we get HTTP 401 Unauthorized, we follow the
   # Bearer challenge in WWW-Authenticate to get a token and use that
   # instead. Registries that want anything other than Bearer (e.g., Basic)
   # are not supported; we give up and the caller sees the 401.

   __slots__ = ()

   def __eq__(self, other):
      return (type(self) == type(other))


class Auth_Bearer(Auth):

   __slots__ = ("token",)

   def __init__(self, token):
      self.token = token

   def __call__(self, req):
      req.headers["Authorization"] = "Bearer %s" % self.token
      return req

   def __eq__(self, other):
      return super().__eq__(other) and (self.token == other.token)

   def __str__(self):
      return "Bearer %s" % self.token_short

   @property
   def token_short(self):
      return ("%s..%s" % (self.token[:8], self.token[-8:]))


class Auth_None(Auth):

   __slots__ = ()

   def __call__(self, req):
      return req

   def __str__(self):
      return "no authorization"


class Token_Cache:
   """Bearer tokens keyed by the complete URL they were requested from
      (realm plus service and scope), so one token serves every request with
      the same challenge. Lives as long as the HTTP object that owns it; there
      is no expiry. A token the registry rejects is evicted."""

   __slots__ = ("tokens",)

   def __init__(self):
      self.tokens = dict()

   def __contains__(self, url):
      return (url in self.tokens)

   def __len__(self):
      return len(self.tokens)

   def evict(self, url):
      self.tokens.pop(url, None)

   def get(self, url):
      return self.tokens.get(url)

   def put(self, url, token):
      self.tokens[url] = token


class HTTP:
   """Transfers image data from a remote image registry via HTTPS. One
      object per command invocation; it keeps the session, the current
      authorization and the token cache.

      Objects of this class have no information about the local
      repository."""

   __slots__ = ("auth",
                "config",
                "registry_url",
                "session",
                "tokens")

   def __init__(self, config, registry_url=None):
      self.config = config
      self.registry_url = (registry_url or config.registry_url).rstrip("/")
      self.auth = Auth_None()
      self.session = None
      self.tokens = Token_Cache()

   @staticmethod
   def headers_log(hs):
      """Log the headers."""
      # All headers first.
      for h in hs:
         h = h.lower()
         if (h == "www-authenticate"):
            f = oc.VERBOSE
         else:
            f = oc.DEBUG
         f("%s: %s" % (h, hs[h]))
      # Friendly message for Docker Hub rate limit.
      pull_ct = period = left_ct = reason = "???"  # keep as strings
      if ("ratelimit-limit" in hs):
         h = hs["ratelimit-limit"]
         m = re.search(r"^(\d+);w=(\d+)$", h)
         if (m is None):
            oc.WARNING("can’t parse RateLimit-Limit: %s" % h)
         else:
            pull_ct = m[1]
            period = str(int(m[2]) / 3600)  # seconds to hours
      if ("ratelimit-remaining" in hs):
         h = hs["ratelimit-remaining"]
         m = re.search(r"^(\d+);", h)
         if (m is None):
            oc.WARNING("can’t parse RateLimit-Remaining: %s" % h)
         else:
            left_ct = m[1]
      if ("docker-ratelimit-source" in hs):
         h = hs["docker-ratelimit-source"]
         m = re.search(r"^[0-9.a-f:]+$", h)     # IPv4 or IPv6
         if (m is not None):
            reason = m[0]
         else:
            m = re.search(r"^[0-9A-Fa-f-]+$", h)  # user UUID
            if (m is not None):
               reason = "auth"
            else:
               oc.WARNING("can’t parse Docker-RateLimit-Source: %s" % h)
      if (any(i != "???" for i in (pull_ct, period, left_ct))):
         oc.VERBOSE("Docker Hub rate limit: %s pulls left of %s per %s hours (%s)"
                    % (left_ct, pull_ct, period, reason))

   @staticmethod
   def challenge_parse(auth_h):
      """Parse a WWW-Authenticate header value. Return a dictionary of its
         parameters if the scheme is Bearer, None otherwise.

           >>> HTTP.challenge_parse('Bearer realm="https://a/token",service="a",scope="repository:x:pull"')
           {'realm': 'https://a/token', 'service': 'a', 'scope': 'repository:x:pull'}
           >>> HTTP.challenge_parse('Basic realm="x"') is None
           True"""
      if (not auth_h):
         return None
      try:
         (scheme, params) = auth_h.split(maxsplit=1)
      except ValueError:
         return None
      if (scheme.lower() != "bearer"):
         return None
      # Two “undocumented (although very stable and frequently cited)”
      # functions to parse the header.
      return urllib.request.parse_keqv_list(
                urllib.request.parse_http_list(params))

   @staticmethod
   def token_url(auth_d):
      """Return the URL to request a token from, given the parsed challenge.

           >>> HTTP.token_url({"realm": "https://a/token", "service": "a b"})
           'https://a/token?service=a+b'"""
      params = [(k, auth_d[k]) for k in ("service", "scope") if auth_d.get(k)]
      if (len(params) == 0):
         return auth_d["realm"]
      sep = "&" if "?" in auth_d["realm"] else "?"
      return auth_d["realm"] + sep + urllib.parse.urlencode(params)

   def _url_of(self, repo, type_, address):
      "Return an appropriate repository URL."
      return "%s/v2/%s/%s/%s" % (self.registry_url, repo, type_, address)

   def authenticate(self, res):
      """Given HTTP 401 response res, get a token according to its Bearer
         challenge and return a new Auth object that uses it, or None if
         that’s not possible."""
      auth_d = self.challenge_parse(res.headers.get("WWW-Authenticate"))
      if (auth_d is None or not auth_d.get("realm")):
         oc.VERBOSE("no Bearer challenge; can’t authenticate")
         return None
      url = self.token_url(auth_d)
      token = self.tokens.get(url)
      if (token is not None and self.auth == Auth_Bearer(token)):
         # The registry just rejected this very token.
         oc.VERBOSE("cached token rejected, requesting new one")
         self.tokens.evict(url)
         token = None
      if (token is None):
         token = self.token_request(url)
         if (token is None):
            return None
         self.tokens.put(url, token)
      else:
         oc.VERBOSE("using cached token for: %s" % url)
      return Auth_Bearer(token)

   def blob_to_file(self, repo, digest, path, msg=None):
      """GET the blob with digest (including algorithm tag) from repo and
         save it at path. Return True if the registry sent it, False
         otherwise. The data are not verified."""
      # /v2/library/hello-world/blobs/<layer-digest>
      url = self._url_of(repo, "blobs", digest)
      if (msg is None):
         msg = digest[7:19]
      sw = oc.Progress_Writer(path, msg)
      res = self.request("GET", url, out=sw)
      sw.close()
      if (res is None or res.status_code != 200):
         oc.ERROR("can’t download blob: %s: %s"
                  % (digest, "no response" if res is None
                             else "HTTP %d" % res.status_code))
         return False
      return True

   def close(self):
      if (self.session is not None):
         self.session.close()

   def manifest_get(self, repo, reference, platform=None):
      """GET the manifest for reference (tag or digest) in repo. Return a
         tuple (status, manifest), where status is the HTTP status (None if
         we got no response at all) and manifest is the parsed JSON (None if
         missing or unparseable).

         If the registry answers with an image index (or Docker manifest
         list) and platform is given, fetch the manifest for the matching
         platform instead; if none matches, manifest is None. Without
         platform, the index itself is returned."""
      url = self._url_of(repo, "manifests", reference)
      res = self.request("GET", url, headers={ "Accept": ACCEPT_MANIFEST })
      if (res is None):
         return (None, None)
      try:
         manifest = res.json() if len(res.content) > 0 else None
      except ValueError as x:
         oc.VERBOSE("can’t parse manifest JSON: %s" % x)
         manifest = None
      type_ = res.headers.get("Content-Type", "")
      oc.VERBOSE("manifest content type: %s" % type_)
      if ("manifest.list.v2" in type_ or "oci.image.index" in type_):
         if (not platform):
            return (res.status_code, manifest)
         digest = manifest_select(manifest, platform)
         if (digest is None):
            oc.ERROR("no manifest for platform: %s" % platform)
            return (res.status_code, None)
         return self.manifest_get(repo, digest, platform)
      return (res.status_code, manifest)

   def request(self, method, url, out=None, headers=None, **kwargs):
      """Request url using method and return the response object, or None if
         there was no response (e.g., connection refused). If out is given,
         a 200 response’s content is streamed to this Progress_Writer object.

         Use current session if there is one, or start a new one if not. If
         the registry says 401, authenticate according to its challenge and
         retry once. If that doesn’t work, return the original 401."""
      self.session_init_maybe()
      oc.VERBOSE("auth: %s" % self.auth)
      if (out is not None):
         kwargs["stream"] = True
      res = self.request_raw(method, url, self.auth, headers, **kwargs)
      if (res is not None and res.status_code == 401):
         oc.VERBOSE("HTTP 401 unauthorized")
         auth = self.authenticate(res)
         if (auth is not None):
            oc.VERBOSE("retrying with auth: %s" % auth)
            res_retry = self.request_raw(method, url, auth, headers, **kwargs)
            if (res_retry is not None and res_retry.status_code != 401):
               self.auth = auth
               res = res_retry
            else:
               oc.VERBOSE("still unauthorized after authenticating")
      # Stream response if needed.
      if (out is not None and res is not None and res.status_code == 200):
         try:
            length = int(res.headers["Content-Length"])
         except KeyError:
            length = None
         except ValueError:
            oc.WARNING("invalid Content-Length in response")
            length = None
         out.start(length)
         try:
            for chunk in res.iter_content(oc.HTTP_CHUNK_SIZE):
               out.write(chunk)
         except requests.exceptions.RequestException as x:
            oc.ERROR("%s failed while reading response: %s" % (method, x))
            return None
      return res

   def request_raw(self, method, url, auth=None, headers=None, **kwargs):
      """Request url using method and return the requests.Response object, or
         None if the request failed without a response.

         Session must already exist. If auth arg given, use it; otherwise, use
         no authentication. Redirects are followed here, not by requests, up
         to config.redirects hops; authorization is dropped before following
         one because the new location may be a different host (e.g. a blob
         store)."""
      if (auth is None):
         auth = Auth_None()
      headers = dict(headers or {})
      for hop in range(self.config.redirects + 1):
         oc.VERBOSE("%s: %s" % (method, url))
         try:
            res = self.session.request(method, url, auth=auth,
                                       headers=headers, allow_redirects=False,
                                       **kwargs)
         except requests.exceptions.RequestException as x:
            oc.ERROR("%s failed: %s" % (method, x))
            return None
         oc.VERBOSE("response status: %d" % res.status_code)
         self.headers_log(res.headers)
         if (    300 <= res.status_code < 400
             and "Location" in res.headers
             and hop < self.config.redirects):
            url = urllib.parse.urljoin(url, res.headers["Location"])
            oc.VERBOSE("redirected, dropping authorization")
            auth = Auth_None()
            headers.pop("Authorization", None)
            res.close()
            continue
         break
      return res

   def session_init_maybe(self):
      "Initialize session if it's not initialized; otherwise do nothing."
      if (self.session is None):
         oc.VERBOSE("initializing session")
         self.session = requests.Session()
         self.session.verify = self.config.tls_verify

   def token_request(self, url):
      "Request a bearer token from url. Return the token, or None."
      oc.VERBOSE("requesting bearer token: %s" % url)
      res = self.request_raw("GET", url, Auth_None(),
                             { "Accept": "application/json" })
      if (res is None or res.status_code != 200):
         oc.VERBOSE("bearer token request rejected")
         return None
      try:
         body = res.json()
         token = body.get("token") or body.get("access_token")
      except (ValueError, AttributeError):
         token = None
      if (not token):
         oc.VERBOSE("no token in token response")
         return None
      oc.VERBOSE("received bearer token: %s..%s" % (token[:8], token[-8:]))
      return token

   def v2_p(self):
      """Return True if the registry speaks API v2. A 401 counts, since we
         haven’t tried to authenticate for real."""
      res = self.request("GET", self.registry_url + "/v2/",
                         headers={ "Accept": "application/json" })
      return (res is not None and res.status_code in {200, 401})

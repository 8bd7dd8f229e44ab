import hashlib
import io
import json
import tarfile

import pytest
import requests.structures

import ocistash.core as oc
import ocistash.registry as rg
import ocistash.repository as rp


## Helpers ##

def digest_of(data):
   return "sha256:" + hashlib.sha256(data).hexdigest()

def tar_bytes(entries):
   """Return an uncompressed tarball, as bytes, with the given entries. Each
      entry is (name, kind, payload): kind “file” (payload is content, str or
      bytes), “dir”, “symlink” or “hardlink” (payload is the target), or
      “fifo”. An optional fourth item is the mode."""
   buf = io.BytesIO()
   with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tf:
      for entry in entries:
         (name, kind, payload) = entry[:3]
         ti = tarfile.TarInfo(name)
         data = None
         if (kind == "file"):
            data = payload.encode("UTF-8") if isinstance(payload, str) \
                   else payload
            ti.size = len(data)
            ti.mode = 0o644
         elif (kind == "dir"):
            ti.type = tarfile.DIRTYPE
            ti.mode = 0o755
         elif (kind == "symlink"):
            ti.type = tarfile.SYMTYPE
            ti.linkname = payload
         elif (kind == "hardlink"):
            ti.type = tarfile.LNKTYPE
            ti.linkname = payload
         elif (kind == "fifo"):
            ti.type = tarfile.FIFOTYPE
         else:
            raise ValueError(kind)
         if (len(entry) > 3):
            ti.mode = entry[3]
         tf.addfile(ti, io.BytesIO(data) if data is not None else None)
   return buf.getvalue()

def tar_write(path, entries):
   path.write_bytes(tar_bytes(entries))
   return path

def image_make(repo, name, tag, layers, config=None):
   """Put image name:tag into repo the way a pull leaves it. layers is a list
      of tarball bytes, lowest first. Return (layer digests, config digest)."""
   if (config is None):
      config = { "os": "linux", "architecture": "amd64" }
   assert repo.repo_create(name)
   assert repo.tag_create(tag)
   assert repo.version_set("v2")
   blobs = list(layers) + [json.dumps(config).encode("UTF-8")]
   digests = list()
   for data in blobs:
      digest = digest_of(data)
      blob = repo.blob_path(digest)
      if (not blob.is_file()):
         blob.file_write(data)
      assert repo.layer_link_add(blob)
      digests.append(digest)
   manifest = { "schemaVersion": 2,
                "mediaType": rg.TYPES_MANIFEST["oci1"],
                "config": { "digest": digests[-1],
                            "size": len(blobs[-1]) },
                "layers": [{ "digest": d, "size": len(b) }
                           for (d, b) in zip(digests[:-1], blobs[:-1])] }
   assert repo.json_save("manifest", manifest)
   return (digests[:-1], digests[-1])


class Fake_Response:

   def __init__(self, status_code=200, content=b"", headers=None):
      self.status_code = status_code
      if (not isinstance(content, bytes)):
         content = json.dumps(content).encode("UTF-8")
      self.content = content
      self.headers = requests.structures.CaseInsensitiveDict(headers or {})
      if ("Content-Length" not in self.headers):
         self.headers["Content-Length"] = str(len(content))
      self.closed = False

   def close(self):
      self.closed = True

   def iter_content(self, chunk_size):
      for i in range(0, len(self.content), chunk_size):
         yield self.content[i:i+chunk_size]

   def json(self):
      return json.loads(self.content)


class Fake_Request:

   def __init__(self, headers):
      self.headers = dict(headers or {})


class Fake_Session:
   """Stands in for requests.Session. Responses are scripted per (method,
      URL); each entry is a list of responses returned in order, the last one
      repeating. An exception in the list is raised instead. Every request is
      recorded in calls as (method, url, headers after authorization)."""

   def __init__(self):
      self.calls = list()
      self.routes = dict()
      self.verify = True

   def close(self):
      pass

   def add(self, url, *responses, method="GET"):
      self.routes[(method, url)] = list(responses)

   def request(self, method, url, auth=None, headers=None, **kwargs):
      req = Fake_Request(headers)
      if (auth is not None):
         req = auth(req)
      self.calls.append((method, url, req.headers))
      try:
         responses = self.routes[(method, url)]
      except KeyError:
         return Fake_Response(404, b"")
      if (len(responses) > 1):
         res = responses.pop(0)
      else:
         res = responses[0]
      if (isinstance(res, Exception)):
         raise res
      return res

   def urls(self):
      return [url for (_, url, _) in self.calls]


## Fixtures ##

@pytest.fixture
def config(tmp_path):
   return oc.Config(tmp_path / "store")

@pytest.fixture
def repo(config):
   r = rp.Repository(config)
   r.layout_ensure()
   return r

@pytest.fixture
def session(monkeypatch):
   s = Fake_Session()
   monkeypatch.setattr(rg.requests, "Session", lambda: s)
   return s

@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch):
   monkeypatch.setattr(oc, "verbose", 0)
   monkeypatch.setattr(oc, "log_quiet", 0)

import io
import os
import uuid

import pytest

import ocistash.core as oc
import ocistash.filesystem as fs
import ocistash.image as im
import ocistash.repository as rp

from conftest import image_make, tar_bytes, tar_write


## Reference ##

@pytest.mark.parametrize("src, repo, tag", [
   ("alpine", "alpine", "latest"),
   ("alpine:3.18", "alpine", "3.18"),
   ("foo/bar", "foo/bar", "latest"),
   ("Foo/Bar:v1", "Foo/Bar", "v1"),
   ("quay.io/foo/bar:1", "quay.io/foo/bar", "1"),
   ("localhost:5000/foo", "localhost:5000/foo", "latest"),
   ("registry.example.com:443/a/b/c:x_y-z", "registry.example.com:443/a/b/c",
    "x_y-z"),
])
def test_reference(src, repo, tag):
   r = im.Reference(src)
   assert (r.repo, r.tag) == (repo, tag)

def test_reference_parts():
   r = im.Reference("quay.io:8443/a/b/c:1")
   assert r.host == "quay.io"
   assert r.port == 8443
   assert r.path == ["a", "b"]
   assert r.name == "c"
   assert r.path_full == "a/b/c"
   assert str(r) == "quay.io:8443/a/b/c:1"

def test_reference_host_without_dot_is_path():
   r = im.Reference("foo/bar/baz")
   assert r.host is None
   assert r.path == ["foo", "bar"]

def test_reference_digest():
   hex_ = "AB" * 32
   r = im.Reference("foo/bar@sha256:" + hex_)
   assert r.digest == hex_.lower()
   assert r.tag == "sha256:" + hex_.lower()
   assert r.repo == "foo/bar"
   assert str(r) == "foo/bar@sha256:" + hex_.lower()

@pytest.mark.parametrize("src", ["", "foo bar", "foo:", "foo/", ":tag",
                                 "foo@sha256:xyz"])
def test_reference_invalid(src):
   with pytest.raises(oc.Fatal_Error):
      im.Reference(src)


## Unpacker ##

def test_whiteouts(tmp_path):
   l1 = tar_write(tmp_path / "1.tar",
                  [("a", "dir", None),
                   ("a/x", "file", "x"),
                   ("a/y", "file", "y"),
                   ("b", "dir", None),
                   ("b/keep", "file", "keep"),
                   ("b/gone", "file", "gone"),
                   ("c", "file", "c")])
   l2 = tar_write(tmp_path / "2.tar",
                  [("a/.wh..wh..opq", "file", ""),
                   ("a/new", "file", "new"),
                   ("b/.wh.gone", "file", ""),
                   (".wh.c", "file", "")])
   dest = fs.Path(tmp_path) // "root"
   assert im.Unpacker().unpack([l1, l2], dest)
   assert sorted(os.listdir(dest // "a")) == ["new"]
   assert sorted(os.listdir(dest // "b")) == ["keep"]
   assert not (dest // "c").exists()
   for (_, dirnames, filenames) in os.walk(dest):
      assert not any(n.startswith(".wh.") for n in dirnames + filenames)

def test_whiteout_then_readd(tmp_path):
   l1 = tar_write(tmp_path / "1.tar", [("f", "file", "old")])
   l2 = tar_write(tmp_path / "2.tar", [(".wh.f", "file", ""),
                                       ("f", "file", "new")])
   dest = fs.Path(tmp_path) // "root"
   assert im.Unpacker().unpack([l1, l2], dest)
   assert (dest // "f").file_read_all() == "new"

def test_whiteouts_stay_inside(tmp_path):
   outside = fs.Path(tmp_path) // "outside"
   outside.mkdirs()
   (outside // "secret").file_write("s")
   dest = fs.Path(tmp_path) // "root"
   dest.mkdirs()
   os.symlink(outside, dest // "out")
   ct = im.Unpacker().whiteouts_apply(["out/.wh.secret",
                                       "out/.wh..wh..opq",
                                       "../.wh.outside"], dest)
   assert ct == 2
   assert (outside // "secret").is_file()
   assert outside.is_dir()

def test_whiteouts_of_dot_names_ignored(tmp_path):
   cdir = fs.Path(tmp_path) // "c1"
   dest = cdir // "ROOT"
   dest.mkdirs()
   (cdir // rp.CONTAINER_ORIGIN).file_write("foo:1")
   l1 = tar_write(tmp_path / "1.tar", [("ok", "file", "ok"),
                                       ("sub", "dir", None),
                                       ("sub/f", "file", "f")])
   l2 = tar_write(tmp_path / "2.tar", [(".wh...", "file", ""),
                                       ("sub/.wh..", "file", ""),
                                       ("sub/.wh.", "file", "")])
   assert im.Unpacker().unpack([l1, l2], dest)
   assert (cdir // rp.CONTAINER_ORIGIN).is_file()
   assert (dest // "ok").is_file()
   assert (dest // "sub/f").is_file()
   assert sorted(os.listdir(dest // "sub")) == ["f"]

def test_unpack_best_effort(tmp_path):
   bad = tmp_path / "bad.tar"
   bad.write_bytes(b"garbage" * 100)
   good = tar_write(tmp_path / "good.tar", [("ok", "file", "ok")])
   dest = fs.Path(tmp_path) // "root"
   assert not im.Unpacker().unpack([bad, good], dest)
   assert (dest // "ok").is_file()

def test_unpack_logs_layer_file_name(tmp_path, monkeypatch):
   log = io.StringIO()
   monkeypatch.setattr(oc, "log_fp", log)
   layer = tar_write(tmp_path / "rootfs.tar", [("f", "file", "f")])
   assert im.Unpacker().unpack([layer], fs.Path(tmp_path) // "root")
   assert "layer 1/1: rootfs.tar: extracting" in log.getvalue()

def test_unpack_no_layers(tmp_path):
   assert not im.Unpacker().unpack([], tmp_path / "root")

def test_unpack_permissions_usable(tmp_path):
   l1 = tar_write(tmp_path / "1.tar", [("ro", "dir", None, 0o555),
                                       ("ro/f", "file", "f", 0o444)])
   dest = fs.Path(tmp_path) // "root"
   assert im.Unpacker().unpack([l1], dest)
   assert os.stat(dest // "ro").st_mode & 0o700 == 0o700
   assert os.stat(dest // "ro/f").st_mode & 0o600 == 0o600


## Image ##

LAYER_1 = tar_bytes([("etc", "dir", None), ("etc/os-release", "file", "v1")])
LAYER_2 = tar_bytes([("etc/os-release", "file", "v2"),
                     ("bin", "dir", None)])

def test_container_create(repo):
   image_make(repo, "foo", "1", [LAYER_1, LAYER_2],
              { "os": "linux", "architecture": "amd64",
                "config": { "Env": ["PATH=/bin"] } })
   cid = im.Image(repo, "foo", "1").container_create()
   uuid.UUID(cid)
   cdir = repo.container_select(cid)
   root = cdir // rp.CONTAINER_ROOT
   assert (root // "etc/os-release").file_read_all() == "v2"
   assert (root // "bin").is_dir()
   config = (cdir // rp.CONTAINER_JSON).json_from_file("test")
   assert config["config"]["Env"] == ["PATH=/bin"]
   assert (cdir // rp.CONTAINER_ORIGIN).file_read_all() == "foo:1"
   assert repo.containers_list() == [(cid, "foo:1", "")]

def test_container_create_given_id(repo):
   image_make(repo, "foo", "1", [LAYER_1])
   image = im.Image(repo, "foo", "1")
   assert image.container_create("mybox") == "mybox"
   assert image.container_create("mybox") is None

def test_container_create_missing_image(repo):
   assert im.Image(repo, "nope", "1").container_create() is None
   assert repo.containers_list() == []

def test_container_create_missing_layer(repo):
   (layers, _) = image_make(repo, "foo", "1", [LAYER_1])
   (repo.cur_tagdir // layers[0]).unlink()
   assert im.Image(repo, "foo", "1").container_create() is None

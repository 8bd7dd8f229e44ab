import json
import os

import pytest

import ocistash.cli as cli
import ocistash.registry as rg
import ocistash.version as version

from conftest import Fake_Response, tar_write


@pytest.fixture
def run(tmp_path, capsys):
   """Run the command line with storage in tmp_path. Return (exit status,
      standard output)."""
   storage = str(tmp_path / "store")
   def run_(*args):
      capsys.readouterr()
      status = cli.main(["-s", storage] + list(args))
      return (status, capsys.readouterr().out)
   return run_

@pytest.fixture
def rootfs(tmp_path):
   return str(tar_write(tmp_path / "rootfs.tar",
                        [("etc", "dir", None),
                         ("etc/motd", "file", "hello\n")]))


def test_no_args(capsys):
   assert cli.main([]) == 1

def test_version(capsys):
   with pytest.raises(SystemExit) as x:
      cli.main(["--version"])
   assert x.value.code == 0
   assert capsys.readouterr().out.strip() == version.VERSION

def test_bad_pull_policy(run):
   with pytest.raises(SystemExit) as x:
      run("pull", "--pull", "sometimes", "alpine")
   assert x.value.code == 2

def test_bad_pull_policy_env(run, monkeypatch):
   monkeypatch.setenv("OCISTASH_PULL", "sometimes")
   assert run("images")[0] == 1

def test_pull_policy_reuse():
   assert cli.pull_policy("reuse") == cli.oc.Pull_Policy.MISSING

def test_bad_image_ref(run):
   assert run("verify", "no spaces allowed")[0] == 1

def test_storage_option_after_subcommand(tmp_path, capsys):
   storage = tmp_path / "elsewhere"
   assert cli.main(["images", "-s", str(storage)]) == 0
   assert (storage / "repos").is_dir()

def test_images_empty(run):
   assert run("images") == (0, "REPOSITORY\n")

def test_import_images_verify(run, rootfs):
   assert run("import", rootfs, "foo/bar:1")[0] == 0
   (status, out) = run("images")
   assert status == 0
   assert out.splitlines() == ["REPOSITORY", "foo/bar:1    ."]
   (status, out) = run("images", "-p")
   assert out.splitlines()[1].split()[1:] == [".", "foo/bar:1"]
   (status, out) = run("images", "-l")
   assert "(1 MB)" in out
   assert run("verify", "foo/bar:1")[0] == 0
   assert run("verify", "foo/bar:2")[0] == 1
   (status, out) = run("inspect", "foo/bar:1")
   assert status == 0
   assert "architecture" in json.loads(out)

def test_import_exists(run, rootfs):
   assert run("import", rootfs, "foo")[0] == 0
   assert run("import", rootfs, "foo")[0] == 1

def test_container_commands(run, rootfs):
   run("import", rootfs, "foo")
   (status, out) = run("create", "--name", "web", "foo")
   assert status == 0
   cid = out.strip()
   (status, out) = run("ps")
   lines = out.splitlines()
   assert lines[0].split() == ["CONTAINER", "ID", "P", "M", "NAMES", "IMAGE"]
   assert lines[1].split() == [cid, ".", "W", "web", "foo:latest"]
   assert run("create", "--name", "web", "foo")[0] == 1
   (status, out) = run("inspect", "-p", "web")
   assert os.path.isfile(os.path.join(out.strip(), "etc/motd"))
   (status, out) = run("inspect", "web")
   assert "architecture" in json.loads(out)
   assert run("rename", "web", "www")[0] == 0
   assert run("rename", "nope", "www2")[0] == 1
   assert run("name", cid, "alias")[0] == 0
   assert run("rename", "alias", "www")[0] == 1     # taken
   assert run("rmname", "alias")[0] == 0
   (status, out) = run("ps")
   assert out.splitlines()[1].split()[3] == "www"
   assert run("protect", "www")[0] == 0
   assert run("rm", "www")[0] == 1
   assert run("unprotect", cid)[0] == 0
   assert run("rm", cid)[0] == 0
   assert run("ps")[1].splitlines()[1:] == []

def test_rm_unknown(run):
   assert run("rm", "nope")[0] == 1

def test_rmi_protected(run, rootfs):
   run("import", rootfs, "foo:1")
   assert run("protect", "foo:1")[0] == 0
   assert run("images")[1].splitlines()[1] == "foo:1    P"
   assert run("rmi", "foo:1")[0] == 1
   assert run("unprotect", "foo:1")[0] == 0
   assert run("rmi", "foo:1")[0] == 0
   assert run("images")[1] == "REPOSITORY\n"
   assert run("rmi", "foo:1")[0] == 1

def test_export_save_load(run, rootfs, tmp_path):
   run("import", rootfs, "foo:1")
   (_, cid) = run("create", "foo:1")
   exported = tmp_path / "export.tar"
   assert run("export", "-o", str(exported), cid.strip())[0] == 0
   assert exported.stat().st_size > 0
   saved = tmp_path / "saved.tar"
   assert run("save", "-o", str(saved), "foo:1")[0] == 0
   assert run("rmi", "foo:1")[0] == 0
   assert run("load", "-i", str(saved)) == (0, "foo:1\n")
   assert run("load", "-i", str(saved), "other") == (0, "other:1\n")

def test_pull_no_registry(run, session):
   assert run("--registry", "reg.example.com", "pull", "foo")[0] == 1
   assert session.urls() == ["https://reg.example.com/v2/"]

def test_manifest_inspect(run, session):
   manifest = { "schemaVersion": 2, "layers": [] }
   session.add("https://reg.example.com/v2/foo/manifests/1",
               Fake_Response(200, manifest,
                             { "Content-Type": rg.TYPES_MANIFEST["oci1"] }))
   (status, out) = run("manifest", "inspect", "reg.example.com/foo:1")
   assert status == 0
   assert json.loads(out) == manifest

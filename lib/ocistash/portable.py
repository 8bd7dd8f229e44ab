import json
import os
import shutil
import sys
import tempfile

from . import core as oc
from . import filesystem as fs
from . import registry as rg
from . import repository as rp


## Constants ##

TYPE_CONFIG = "application/vnd.oci.image.config.v1+json"
TYPE_LAYER = "application/vnd.oci.image.layer.v1.tar"

# Fallback destination for images in an archive that carry no tags.
IMPORTED_DEFAULT = ("IMPORTED", "latest")


## Functions ##

def config_serialize(config):
   "Return config as compact JSON bytes, which is what we digest and store."
   return json.dumps(config, separators=(",", ":")).encode("UTF-8")

def repotag_split(s, default_tag="latest"):
   """Split “repo:tag” into (repo, tag). The colon of a registry port is not a
      tag separator.

        >>> repotag_split("foo/bar:1.0")
        ('foo/bar', '1.0')
        >>> repotag_split("localhost:5000/foo")
        ('localhost:5000/foo', 'latest')
        >>> repotag_split("localhost:5000/foo:2")
        ('localhost:5000/foo', '2')"""
   (repo, sep, tag) = s.rpartition(":")
   if (sep == "" or "/" in tag):
      return (s, default_tag)
   return (repo, tag or default_tag)


## Classes ##

class Portable:
   """Moves images between the local repository and tar files, without a
      registry: single-layer imports of a root filesystem tarball, container
      exports, and the multi-image “docker save” format in both
      directions."""

   __slots__ = ("repo",)

   def __init__(self, repo):
      self.repo = repo

   def _blob_store(self, src):
      """Copy file src into the layer store under its digest, unless already
         there, and link it into the current tag. Return (digest, size)."""
      digest = "sha256:" + oc.file_hash(src)
      blob = self.repo.blob_path(digest)
      if (blob.is_file()):
         oc.VERBOSE("blob already in store: %s" % digest)
      else:
         fs.Path(src).copy(blob)
      self.repo.layer_link_add(blob)
      return (digest, blob.file_size(follow_symlinks=True))

   def _image_write(self, config, layers):
      """Write config and a manifest for layers, a list of (digest, size)
         already linked, into the current tag."""
      config_bytes = config_serialize(config)
      config_digest = "sha256:" + oc.bytes_hash(config_bytes)
      (self.repo.cur_tagdir // config_digest).file_write(config_bytes)
      manifest = { "schemaVersion": 2,
                   "mediaType": rg.TYPES_MANIFEST["oci1"],
                   "config": { "mediaType": TYPE_CONFIG,
                               "size": len(config_bytes),
                               "digest": config_digest },
                   "layers": [{ "mediaType": TYPE_LAYER,
                                "size": size,
                                "digest": digest }
                              for (digest, size) in layers] }
      self.repo.json_save("manifest", manifest)

   def _tag_new(self, repo, tag):
      """Create and select a new, empty v2 tag. Return False if it already
         exists or can’t be made."""
      self.repo.repo_create(repo)
      if (self.repo.tag_select(repo, tag) is not None):
         oc.ERROR("tag already exists: %s:%s" % (repo, tag))
         return False
      if (not (self.repo.tag_create(tag) and self.repo.version_set("v2"))):
         oc.ERROR("can’t create tag: %s:%s" % (repo, tag))
         return False
      return True

   def export_container(self, cid, path):
      """Archive container cid’s root filesystem to tar file path, or standard
         output if path is “-”."""
      cdir = self.repo.container_select(cid)
      if (cdir is None):
         oc.ERROR("container not found: %s" % cid)
         return False
      oc.INFO("exporting container %s to: %s" % (cid, path))
      return fs.TarFile.archive(cdir // rp.CONTAINER_ROOT, path)

   def import_tar(self, path, repo, tag, platform=None):
      """Import tarball path (“-” for standard input) as a new single-layer
         image repo:tag. The config is synthesized: creation time now and
         platform as given (“os/arch[/variant]”) or the host’s."""
      if (path != "-" and not os.path.isfile(path)):
         oc.ERROR("tar file does not exist: %s" % path)
         return False
      if (not self._tag_new(repo, tag)):
         return False
      tmpdir = fs.Path(tempfile.mkdtemp(prefix="ocistash."))
      try:
         if (path == "-"):
            src = tmpdir // "import.tar"
            with src.open("wb") as fp:
               oc.ossafe(shutil.copyfileobj, "can’t read standard input",
                         sys.stdin.buffer, fp)
         else:
            src = path
         layer = self._blob_store(src)
      finally:
         tmpdir.remove()
      if (platform):
         (os_, arch, variant) = rg.platform_parse(platform)
      else:
         (os_, arch, variant) = oc.platform_host()
      config = { "created": oc.now_utc_iso8601(),
                 "architecture": arch or "unknown",
                 "os": os_ or "unknown",
                 "rootfs": { "type": "layers",
                             "diff_ids": [layer[0]] },
                 "config": {} }
      if (variant):
         config["variant"] = variant
      self._image_write(config, [layer])
      oc.INFO("imported: %s:%s: %s" % (repo, tag, layer[0]))
      return True

   def load(self, path, repo_override=None):
      """Load the images in “docker save” archive path (“-” for standard
         input). If repo_override is given, every image goes into that
         repository, keeping its tags. Return the list of “repo:tag” loaded,
         which is empty on failure."""
      if (path != "-" and not os.path.isfile(path)):
         oc.ERROR("image file does not exist: %s" % path)
         return []
      tmpdir = fs.Path(tempfile.mkdtemp(prefix="ocistash."))
      try:
         if (not fs.TarFile.unpack(path, tmpdir)):
            oc.ERROR("can’t extract image archive: %s" % path)
            return []
         index = (tmpdir // "manifest.json").json_from_file("archive manifest",
                                                            fail_ok=True)
         if (not isinstance(index, list)):
            oc.ERROR("manifest.json missing or invalid: %s" % path)
            return []
         loaded = list()
         for entry in index:
            for (repo, tag) in self._load_tags(entry, repo_override):
               if (self._load_entry(tmpdir, entry, repo, tag)):
                  loaded.append("%s:%s" % (repo, tag))
         return loaded
      finally:
         tmpdir.remove()

   def _load_entry(self, tmpdir, entry, repo, tag):
      layers_src = list()
      for name in entry.get("Layers") or []:
         src = tmpdir // name
         if (not (src.is_file() and src.within_p(tmpdir))):
            oc.ERROR("layer file missing, skipping %s:%s: %s" % (repo, tag, name))
            return False
         layers_src.append(src)
      if (len(layers_src) == 0):
         oc.ERROR("no layers, skipping %s:%s" % (repo, tag))
         return False
      if (not self._tag_new(repo, tag)):
         return False
      layers = [self._blob_store(src) for src in layers_src]
      config = dict()
      if (entry.get("Config")):
         config_path = tmpdir // entry["Config"]
         if (config_path.within_p(tmpdir)):
            config = config_path.json_from_file("config", fail_ok=True)
         if (not isinstance(config, dict)):
            oc.WARNING("can’t parse config, using empty: %s" % entry["Config"])
            config = dict()
      self._image_write(config, layers)
      oc.INFO("loaded: %s:%s" % (repo, tag))
      return True

   @staticmethod
   def _load_tags(entry, repo_override):
      """Return the list of (repo, tag) an archive manifest entry should be
         loaded as.

           >>> Portable._load_tags({"RepoTags": ["a/b:1", "a/b:2"]}, None)
           [('a/b', '1'), ('a/b', '2')]
           >>> Portable._load_tags({"RepoTags": ["a/b:1"]}, "c")
           [('c', '1')]
           >>> Portable._load_tags({"RepoTags": None}, "c")
           [('c', 'latest')]
           >>> Portable._load_tags({}, None)
           [('IMPORTED', 'latest')]"""
      repotags = entry.get("RepoTags") or []
      if (repo_override):
         if (len(repotags) == 0):
            return [(repo_override, "latest")]
         return [(repo_override, repotag_split(rt)[1]) for rt in repotags]
      if (len(repotags) == 0):
         return [IMPORTED_DEFAULT]
      return [repotag_split(rt) for rt in repotags]

   def save(self, images, path):
      """Write images, a sequence of (repo, tag), to “docker save” archive
         path (“-” for standard output), which must not already exist. Images
         that are missing or not in v2 layers form are skipped. Return True
         if at least one image was saved, False otherwise."""
      if (len(images) == 0):
         oc.ERROR("no images to save")
         return False
      if (path != "-" and os.path.lexists(path)):
         oc.ERROR("output file already exists: %s" % path)
         return False
      tmpdir = fs.Path(tempfile.mkdtemp(prefix="ocistash."))
      try:
         index = list()
         repositories = dict()
         for (repo, tag) in images:
            entry = self._save_image(tmpdir, repo, tag)
            if (entry is None):
               continue
            index.append(entry)
            last = entry["Layers"][-1].split("/")[0]
            repositories.setdefault(repo, dict())[tag] = last
         if (len(index) == 0):
            oc.ERROR("no images saved")
            return False
         (tmpdir // "manifest.json").json_to_file(index, indent=2)
         (tmpdir // "repositories").json_to_file(repositories, indent=2)
         return fs.TarFile.archive(tmpdir, path)
      finally:
         tmpdir.remove()

   def _save_image(self, tmpdir, repo, tag):
      """Copy repo:tag into save directory tmpdir. Return its manifest.json
         entry, or None if it can’t be saved."""
      tagdir = self.repo.tag_select(repo, tag)
      if (tagdir is None):
         oc.ERROR("image not found: %s:%s" % (repo, tag))
         return None
      manifest = self.repo.json_load("manifest")
      if (not isinstance(manifest, dict) or not manifest.get("layers")):
         oc.ERROR("manifest missing or unsupported: %s:%s" % (repo, tag))
         return None
      layers = list()
      for desc in manifest["layers"]:
         digest = desc.get("digest") or ""
         src = tagdir // digest
         if (not digest or not src.is_file()):
            oc.ERROR("layer missing: %s:%s: %s" % (repo, tag, digest))
            return None
         id_ = digest.split(":")[-1]
         layerdir = tmpdir // id_
         layerdir.mkdirs()
         src.copy(layerdir // "layer.tar")
         (layerdir // "VERSION").file_write("1.0")
         (layerdir // "json").file_write("{}")
         layers.append("%s/layer.tar" % id_)
      config = None
      config_digest = (manifest.get("config") or {}).get("digest")
      if (config_digest):
         config = self.repo.json_load(str(tagdir // config_digest))
      if (config is None):
         config = dict()
      config_bytes = config_serialize(config)
      config_name = "%s.json" % oc.bytes_hash(config_bytes)
      (tmpdir // config_name).file_write(config_bytes)
      oc.INFO("saving: %s:%s" % (repo, tag))
      return { "Config": config_name,
               "RepoTags": ["%s:%s" % (repo, tag)],
               "Layers": layers }

import json
import os
import re

from . import core as oc
from . import filesystem as fs


## Constants ##

# Container names. At least two characters; no slash, so a name is always a
# single entry in the containers directory.
CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")

# File names within tag and container directories.
CONTAINER_JSON = "container.json"
CONTAINER_ORIGIN = "imagerepo.name"
CONTAINER_ROOT = "ROOT"
PROTECT = "PROTECT"
TAG_SENTINEL = "TAG"
VERSIONS = ("v1", "v2")


## Classes ##

class Repository:

   """Source of truth for all paths within the local repository. Do not
      compute any such paths elsewhere!

      The layout is:

        repos/<repo>/<tag>/       one tag: sentinel TAG, version marker v1 or
                                  v2, manifest, and a symlink named for each
                                  blob it uses, pointing into layers/
        layers/<digest>           shared blob store
        containers/<cid>/         one container: ROOT/, imagerepo.name,
                                  container.json, maybe PROTECT
        containers/<name>         name alias; symlink to a container

      The repository keeps a notion of the “current” repo, tag and container,
      set by the *_select() and *_create() methods; the per-tag operations
      work on the current tag. Nothing here talks to the network."""

   __slots__ = ("config",
                "cur_containerdir",
                "cur_repodir",
                "cur_tagdir")

   def __init__(self, config):
      self.config = config
      self.cur_containerdir = None
      self.cur_repodir = None
      self.cur_tagdir = None

   @property
   def containersdir(self):
      return fs.Path(self.config.containersdir)

   @property
   def layersdir(self):
      return fs.Path(self.config.layersdir)

   @property
   def reposdir(self):
      return fs.Path(self.config.reposdir)

   @property
   def topdir(self):
      return fs.Path(self.config.topdir)

   def blob_path(self, digest):
      return self.layersdir // digest

   def blob_part_path(self, digest):
      "Where a blob is downloaded to before it is verified."
      return self.layersdir // ("part_" + digest)

   def tag_dir(self, repo, tag):
      return self.reposdir // repo // tag

   ## Layout ##

   def layout_ensure(self):
      """Ensure the top-level directories exist. Safe to call any number of
         times; never deletes anything except partial downloads left over
         from an interrupted pull."""
      for d in (self.topdir, self.reposdir, self.layersdir,
                self.containersdir):
         d.mkdirs()
      part_ct = 0
      for name in sorted(self.layersdir.listdir()):
         if (name.startswith("part_")):
            oc.VERBOSE("deleting: %s" % name)
            (self.layersdir // name).unlink(missing_ok=True)
            part_ct += 1
      if (part_ct > 0):
         oc.WARNING("deleted %d partially downloaded files" % part_ct)
      return True

   def layout_valid_p(self):
      return all(d.is_dir() for d in (self.reposdir, self.layersdir,
                                      self.containersdir))

   ## Repositories and tags ##

   def _tag_p(self, tagdir):
      return (tagdir // TAG_SENTINEL).is_file()

   def repo_create(self, repo):
      "Create (if needed) and select the repository directory for repo."
      if (not repo):
         return False
      repodir = self.reposdir // repo
      repodir.mkdirs()
      self.cur_repodir = repodir
      return True

   def tag_create(self, tag):
      """Create (if needed) and select tag within the current repository,
         writing the sentinel that makes the directory count as a tag."""
      if (self.cur_repodir is None or not tag):
         return False
      tagdir = self.cur_repodir // tag
      tagdir.mkdirs()
      (tagdir // TAG_SENTINEL).file_write("%s:%s" % (self.cur_repodir, tag))
      self.cur_tagdir = tagdir
      return True

   def tag_select(self, repo, tag):
      """Select tag in repo and return its directory, or None if there is no
         such tag. A directory without the sentinel is not a tag."""
      if (not repo or not tag):
         return None
      tagdir = self.tag_dir(repo, tag)
      if (tagdir.is_dir() and self._tag_p(tagdir)):
         self.cur_repodir = self.reposdir // repo
         self.cur_tagdir = tagdir
         return tagdir
      return None

   def version_set(self, version):
      assert (version in VERSIONS)
      if (self.cur_tagdir is None):
         return False
      for v in VERSIONS:
         (self.cur_tagdir // v).unlink(missing_ok=True)
      (self.cur_tagdir // version).file_write("")
      return True

   def version_get(self):
      if (self.cur_tagdir is None):
         return None
      for v in VERSIONS:
         if ((self.cur_tagdir // v).is_file()):
            return v
      return None

   def _json_path(self, name):
      if (os.path.isabs(name)):
         return fs.Path(name)
      assert (self.cur_tagdir is not None)
      return self.cur_tagdir // name

   def json_load(self, name):
      """Return the parsed JSON in file name, relative to the current tag
         unless absolute, or None if it’s missing or malformed."""
      if (not os.path.isabs(name) and self.cur_tagdir is None):
         return None
      return self._json_path(name).json_from_file(name, fail_ok=True)

   def json_save(self, name, data):
      if (not os.path.isabs(name) and self.cur_tagdir is None):
         return False
      self._json_path(name).json_to_file(data)
      return True

   def layer_link_add(self, blob, linkname=None):
      """Link blob (normally in the shared store) into the current tag under
         linkname, or its own name if not given. The link is relative so the
         whole repository can be moved."""
      blob = fs.Path(blob)
      if (self.cur_tagdir is None):
         return False
      if (not blob.is_file()):
         oc.ERROR("can’t link, blob missing: %s" % blob)
         return False
      link = self.cur_tagdir // fs.Path(linkname or blob).name
      target = os.path.relpath(blob, link.parent)
      link.symlink_to(target, clobber=True)
      return True

   ## Images ##

   def image_attributes(self):
      """Return (config, layers) for the current tag, where config is the
         image config as parsed JSON and layers is a list of layer blob paths,
         oldest first. Return (None, None) if the tag is v1 (unsupported), or
         the manifest is missing, or it refers to a layer we don’t have."""
      tagdir = self.cur_tagdir
      if (tagdir is None or self.version_get() != "v2"):
         return (None, None)
      manifest = self.json_load("manifest")
      if (not isinstance(manifest, dict)):
         return (None, None)
      if ("fsLayers" in manifest):
         # Schema 1: layers newest first, and the config is JSON embedded as
         # a string in the newest history entry.
         digests = [i.get("blobSum") for i in reversed(manifest["fsLayers"])]
         try:
            config = json.loads(manifest["history"][0]["v1Compatibility"])
         except (KeyError, IndexError, TypeError, ValueError):
            config = None
      elif ("layers" in manifest):
         digests = [i.get("digest") for i in manifest["layers"]]
         config = None
         config_digest = (manifest.get("config") or {}).get("digest")
         if (config_digest):
            config = self.json_load(str(tagdir // config_digest))
      else:
         return (None, None)
      layers = list()
      for d in digests:
         if (not d or not (tagdir // d).is_file()):
            oc.VERBOSE("layer missing: %s" % d)
            return (None, None)
         layers.append(tagdir // d)
      return (config, layers)

   def image_platform(self):
      "Return platform of the current tag as “os/arch[/variant]”."
      (config, _) = self.image_attributes()
      if (not isinstance(config, dict)):
         return "unknown/unknown"
      return oc.platform_str(config.get("os") or "unknown",
                             config.get("architecture") or "unknown",
                             config.get("variant") or "")

   def image_repos(self):
      """Return a list of (repo, tag) for every tag in the repository. A tag
         is any directory containing the sentinel; repositories nest."""
      def walk(dir_):
         for name in sorted(dir_.listdir()):
            path = dir_ // name
            if (path.is_symlink() or not path.is_dir()):
               continue
            if (self._tag_p(path)):
               tags.append((str(dir_.relative_to(self.reposdir)), name))
            else:
               walk(path)
      tags = list()
      if (self.reposdir.is_dir()):
         walk(self.reposdir)
      return tags

   def image_verify(self):
      """Check that everything the current tag’s manifest refers to is
         present. Content is not re-hashed; digests were checked when the
         blobs were fetched."""
      if (self.cur_tagdir is None):
         return False
      manifest = self.json_load("manifest")
      if (not isinstance(manifest, dict)):
         oc.ERROR("manifest is empty or missing")
         return False
      for layer in manifest.get("layers", manifest.get("fsLayers", [])):
         digest = layer.get("digest") or layer.get("blobSum")
         if (not digest):
            oc.ERROR("layer digest missing in manifest")
            return False
         if (not (self.cur_tagdir // digest).is_file()):
            oc.ERROR("layer file missing: %s" % digest)
            return False
      config_digest = (manifest.get("config") or {}).get("digest")
      if (config_digest and not (self.cur_tagdir // config_digest).is_file()):
         oc.ERROR("config file missing: %s" % config_digest)
         return False
      return True

   def layers_list(self, repo, tag):
      "Return a list of (path, size) for each blob linked from repo:tag."
      tagdir = self.tag_select(repo, tag)
      if (tagdir is None):
         return []
      layers = list()
      for name in sorted(tagdir.listdir()):
         path = tagdir // name
         if (path.is_symlink()):
            try:
               layers.append((path, os.stat(path).st_size))
            except OSError:
               pass  # dangling link
      return layers

   def tag_protected_p(self, repo, tag):
      if (not repo or not tag):
         return False
      return (self.tag_dir(repo, tag) // PROTECT).is_file()

   def tag_protect(self, repo, tag):
      tagdir = self.tag_select(repo, tag)
      if (tagdir is None):
         return False
      (tagdir // PROTECT).file_ensure_exists()
      return True

   def tag_unprotect(self, repo, tag):
      tagdir = self.tag_select(repo, tag)
      if (tagdir is None):
         return False
      (tagdir // PROTECT).unlink(missing_ok=True)
      return True

   def _links_find(self, name, dir_):
      """Return every symlink below dir_ whose name contains name. Symlinks
         to directories are not descended into."""
      found = list()
      try:
         entries = sorted(os.listdir(dir_))
      except OSError:
         return found
      for entry in entries:
         path = dir_ // entry
         if (path.is_symlink()):
            if (name in entry):
               found.append(path)
         elif (path.is_dir()):
            found += self._links_find(name, path)
      return found

   def _in_repository(self, name):
      return self._links_find(name, self.reposdir)

   def _layers_unlink(self, tagdir, force):
      """Remove each blob link in tagdir, and the blob itself if no other tag
         in the repository still links to it. Return False on the first
         failure unless force."""
      for name in sorted(tagdir.listdir()):
         link = tagdir // name
         if (not link.is_symlink()):
            continue
         try:
            target = os.readlink(link)
         except OSError:
            target = ""
         if (not link.remove() and not force):
            return False
         if (target and not self._in_repository(os.path.basename(target))):
            blob = tagdir // target
            oc.VERBOSE("deleting unreferenced blob: %s" % blob.name)
            if (not blob.remove() and not force):
               return False
      return True

   def image_remove(self, repo, tag, force=False):
      """Remove tag from repo, along with every blob no other tag uses, then
         any repository directories left empty. Not atomic: on failure some
         links may already be gone, and running it again finishes the job."""
      tagdir = self.tag_select(repo, tag)
      if (tagdir is None):
         oc.ERROR("image not found: %s:%s" % (repo, tag))
         return False
      if (not force and self.tag_protected_p(repo, tag)):
         oc.ERROR("image is protected: %s:%s" % (repo, tag))
         return False
      if (not self._layers_unlink(tagdir, force)):
         oc.ERROR("can’t remove image layers: %s:%s" % (repo, tag))
         return False
      if (not tagdir.remove() and not force):
         return False
      self.cur_repodir = None
      self.cur_tagdir = None
      parts = repo.split("/")
      while (len(parts) > 0):
         if (not (self.reposdir // "/".join(parts)).rmdir_p()):
            break
         parts.pop()
      return True

   ## Containers ##

   def container_dir(self, cid):
      return self.containersdir // str(cid)

   def container_create(self, repo, tag, cid):
      """Create and select an empty container cid made from repo:tag. Return
         its directory, or None if a container with that id already
         exists."""
      cdir = self.container_dir(cid)
      if (cdir.is_dir()):
         return None
      (cdir // CONTAINER_ROOT).mkdirs()
      (cdir // CONTAINER_ORIGIN).file_write("%s:%s" % (repo, tag))
      self.cur_containerdir = cdir
      return cdir

   def container_select(self, cid):
      "Return the directory of container cid (following aliases), or None."
      if (not cid):
         return None
      cdir = self.container_dir(cid)
      if (cdir.is_dir()):
         return cdir
      return None

   def containers_list(self):
      """Return a list of (id, “repo:tag”, names) for every container, where
         names is the container’s aliases joined with commas."""
      containers = list()
      if (not self.containersdir.is_dir()):
         return containers
      for name in sorted(self.containersdir.listdir()):
         cdir = self.containersdir // name
         if (cdir.is_symlink() or not cdir.is_dir()):
            continue
         origin = cdir // CONTAINER_ORIGIN
         try:
            with open(origin, "rt", encoding="UTF-8") as fp:
               reponame = fp.read().strip()
         except OSError:
            reponame = ""
         containers.append((name, reponame,
                            ",".join(self.container_names(name))))
      return containers

   def container_id(self, name_or_id):
      """Return the container id that name_or_id refers to, either directly
         or as an alias, or None if neither."""
      if (not name_or_id or "/" in name_or_id or name_or_id in {".", ".."}):
         return None
      path = self.containersdir // name_or_id
      if (path.is_symlink()):
         return path.readlink().name
      if (path.is_dir()):
         return name_or_id
      return None

   def container_names(self, cid):
      names = list()
      if (not self.containersdir.is_dir()):
         return names
      for name in sorted(self.containersdir.listdir()):
         path = self.containersdir // name
         if (path.is_symlink() and path.readlink().name == cid):
            names.append(name)
      return names

   @staticmethod
   def container_name_valid_p(name):
      """e.g.:

           >>> Repository.container_name_valid_p("my-box_1.0")
           True
           >>> Repository.container_name_valid_p("x")
           False
           >>> Repository.container_name_valid_p("-foo")
           False"""
      return bool(name and CONTAINER_NAME_RE.search(name))

   def container_name_set(self, cid, name):
      """Add alias name for container cid. Fails if the name is invalid, the
         container doesn’t exist, or the name is already taken."""
      if (not self.container_name_valid_p(name)):
         oc.ERROR("invalid container name: %s" % name)
         return False
      cdir = self.container_select(cid)
      if (cdir is None):
         oc.ERROR("container not found: %s" % cid)
         return False
      link = self.containersdir // name
      if (os.path.lexists(link)):
         oc.ERROR("container name already in use: %s" % name)
         return False
      link.symlink_to(os.path.relpath(cdir, link.parent))
      return True

   def container_name_del(self, name):
      "Remove alias name. The container itself is untouched."
      if (not self.container_name_valid_p(name)):
         oc.ERROR("invalid container name: %s" % name)
         return False
      link = self.containersdir // name
      if (not link.is_symlink()):
         oc.ERROR("container name not found: %s" % name)
         return False
      return link.remove()

   def container_protected_p(self, cid):
      cdir = self.container_select(cid)
      return (cdir is not None and (cdir // PROTECT).is_file())

   def container_protect(self, cid):
      cdir = self.container_select(cid)
      if (cdir is None):
         return False
      (cdir // PROTECT).file_ensure_exists()
      return True

   def container_unprotect(self, cid):
      cdir = self.container_select(cid)
      if (cdir is None):
         return False
      (cdir // PROTECT).unlink(missing_ok=True)
      return True

   def container_writable(self, cid):
      "Return 1 if ROOT is writable, 0 if it exists but isn’t, 2 if missing."
      root = self.container_dir(cid) // CONTAINER_ROOT
      if (not root.is_dir()):
         return 2
      return 1 if os.access(root, os.W_OK) else 0

   def container_size(self, cid):
      """Return the disk usage of container cid’s ROOT in MiB, rounded up,
         or -1 if it can’t be determined. Stays on one filesystem and counts
         hard-linked files once."""
      root = self.container_dir(cid) // CONTAINER_ROOT
      if (not root.is_dir()):
         return -1
      try:
         dev = os.lstat(root).st_dev
         seen = set()
         total = 0
         for (dirpath, dirnames, filenames) in os.walk(root):
            for name in dirnames + filenames:
               st = os.lstat(os.path.join(dirpath, name))
               if (st.st_dev != dev or (st.st_ino in seen)):
                  continue
               seen.add(st.st_ino)
               total += st.st_blocks * 512
            dirnames[:] = [d for d in dirnames
                           if os.lstat(os.path.join(dirpath, d)).st_dev == dev]
      except OSError as x:
         oc.WARNING("can’t size container: %s: %s" % (cid, x.strerror))
         return -1
      return -(-total // 2**20)

   def container_remove(self, cid, force=False):
      """Remove container cid and all its aliases. Aliases go first, so a
         protected container loses its names even though it stays."""
      cdir = self.container_select(cid)
      if (cdir is None):
         oc.ERROR("container not found: %s" % cid)
         return False
      for name in self.container_names(cid):
         self.container_name_del(name)
      if (not force and self.container_protected_p(cid)):
         oc.ERROR("container is protected: %s" % cid)
         return False
      if (self.cur_containerdir == cdir):
         self.cur_containerdir = None
      return cdir.remove()

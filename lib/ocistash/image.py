import os
import uuid

import lark

from . import core as oc
from . import filesystem as fs
from . import repository as rp


## Constants ##

# Grammar for image references.
GRAMMAR_IMAGE_REF = r"""
// Note: Hostnames with no dot and no port get parsed as a hostname, which
// is wrong; it should be the first path component. We patch this error later.

start: image_ref

image_ref: ir_hostport? ir_path? ir_name ( ir_tag | ir_digest )?
ir_hostport: IR_HOST ( ":" IR_PORT )? "/"
ir_path: ( IR_PATH_COMPONENT "/" )+
ir_name: IR_PATH_COMPONENT
ir_tag: ":" IR_TAG
ir_digest: "@sha256:" HEX_STRING
IR_HOST: /[A-Za-z0-9_.-]+/
IR_PORT: /[0-9]+/
IR_TAG: /[A-Za-z0-9_.-]+/

HEX_STRING: /[0-9A-Fa-f]+/
IR_PATH_COMPONENT: /[A-Za-z0-9_.-]+/
"""


## Classes ##

class Image:
   """Image in the local repository, identified by repo and tag. Knows how to
      turn itself into a container."""

   __slots__ = ("repo",
                "repository",
                "tag")

   def __init__(self, repository, repo, tag):
      self.repository = repository
      self.repo = repo
      self.tag = tag

   def __str__(self):
      return "%s:%s" % (self.repo, self.tag)

   def container_create(self, cid=None):
      """Create a container from this image, with id cid (a new UUID if
         None), and unpack the image into its ROOT. Return the container id,
         or None if the container couldn’t be set up. If unpacking fails
         partway, the container is still created and its id returned; the
         error is logged."""
      if (self.repository.tag_select(self.repo, self.tag) is None):
         oc.ERROR("image not found: %s" % self)
         return None
      (config, layers) = self.repository.image_attributes()
      if (config is None or layers is None):
         oc.ERROR("can’t get layers or config: %s" % self)
         return None
      if (cid is None):
         cid = str(uuid.uuid4())
      cdir = self.repository.container_create(self.repo, self.tag, cid)
      if (cdir is None):
         oc.ERROR("container already exists: %s" % cid)
         return None
      (cdir // rp.CONTAINER_JSON).json_to_file(config)
      if (not Unpacker().unpack(layers, cdir // rp.CONTAINER_ROOT)):
         oc.ERROR("unpacking failed, container may be incomplete: %s" % cid)
      return cid


class Reference:
   """Reference to an image, e.g. “quay.io/foo/bar:1.0”. The constructor
      parses a string.

        >>> r = Reference("alpine")
        >>> (r.repo, r.tag)
        ('alpine', 'latest')
        >>> r = Reference("localhost:5000/foo/bar:1.0")
        >>> (r.host, r.port, r.repo, r.tag)
        ('localhost', 5000, 'localhost:5000/foo/bar', '1.0')
        >>> Reference("foo/bar@sha256:" + "ab" * 32).tag[:11]
        'sha256:abab'

      Warning: References containing a hostname without a dot and no port
      cannot be round-tripped through a string, because the hostname will be
      assumed to be a path component."""

   __slots__ = ("digest",
                "host",
                "name",
                "path",
                "port",
                "tag_")

   # Reference parser object. Instantiating a parser took 100ms when we tested
   # it, which means we can’t really put it in a loop. We use a class variable
   # and populate it at the time of first use.
   parser = None

   def __init__(self, src):
      self.host = None
      self.port = None
      self.path = []
      self.name = None
      self.tag_ = None
      self.digest = None
      self.from_tree(self.parse(src))

   def __str__(self):
      if (self.digest is not None):
         return "%s@sha256:%s" % (self.repo, self.digest)
      return "%s:%s" % (self.repo, self.tag)

   @classmethod
   def parse(class_, s):
      if (class_.parser is None):
         class_.parser = lark.Lark(GRAMMAR_IMAGE_REF, parser="earley",
                                   propagate_positions=True, tree_class=Tree)
      try:
         tree = class_.parser.parse(s)
      except lark.exceptions.UnexpectedEOF:
         # No column location for this one.
         oc.FATAL("image ref syntax, at end: %s" % s)
      except lark.exceptions.UnexpectedInput as x:
         if (x.column == -1):
            oc.FATAL("image ref syntax, at end: %s" % s)
         else:
            oc.FATAL("image ref syntax, char %d: %s" % (x.column, s))
      oc.DEBUG(tree.pretty())
      return tree

   @property
   def path_full(self):
      return "/".join(self.path + [self.name])

   @property
   def repo(self):
      "Repository name as given, i.e. including the registry host if any."
      out = ""
      if (self.host is not None):
         out += self.host
         if (self.port is not None):
            out += ":%d" % self.port
         out += "/"
      return out + self.path_full

   @property
   def tag(self):
      "Tag, or the digest with algorithm if given that way, or “latest”."
      if (self.tag_ is not None):
         return self.tag_
      if (self.digest is not None):
         return "sha256:" + self.digest
      return "latest"

   def from_tree(self, t):
      self.host = t.child_terminal("ir_hostport", "IR_HOST")
      self.port = t.child_terminal("ir_hostport", "IR_PORT")
      if (self.port is not None):
         self.port = int(self.port)
      self.path = list(t.child_terminals("ir_path", "IR_PATH_COMPONENT"))
      self.name = t.child_terminal("ir_name", "IR_PATH_COMPONENT")
      self.tag_ = t.child_terminal("ir_tag", "IR_TAG")
      self.digest = t.child_terminal("ir_digest", "HEX_STRING")
      if (self.digest is not None):
         self.digest = self.digest.lower()
      # Resolve grammar ambiguity for hostnames w/o dot or port.
      if (    self.host is not None
          and "." not in self.host
          and self.port is None):
         self.path.insert(0, self.host)
         self.host = None


class Tree(lark.tree.Tree):

   def child(self, cname):
      """Locate a descendant subtree named cname using breadth-first search
         and return it. If no such subtree exists, return None."""
      return next(self.children_(cname), None)

   def child_terminal(self, cname, tname, i=0):
      """Locate a descendant subtree named cname using breadth-first search
         and return its first child terminal named tname. If no such subtree
         exists, or it doesn’t have such a terminal, return None."""
      st = self.child(cname)
      if (st is not None):
         return st.terminal(tname, i)
      else:
         return None

   def child_terminals(self, cname, tname):
      """Locate a descendant substree named cname using breadth-first search
         and yield the values of its child terminals named tname. If no such
         subtree exists, or it has no such terminals, yield empty sequence."""
      for d in self.iter_subtrees_topdown():
         if (d.data == cname):
            return d.terminals(tname)
      return []

   def children_(self, cname):
      "Yield children of tree named cname using breadth-first search."
      for st in self.iter_subtrees_topdown():
         if (st.data == cname):
            yield st

   def terminal(self, tname, i=0):
      """Return the value of the ith child terminal named tname (zero-based),
         or None if not found."""
      for (j, t) in enumerate(self.terminals(tname)):
         if (j == i):
            return t
      return None

   def terminals(self, tname):
      """Yield values of all child terminals named tname, or empty list if
         none found."""
      for j in self.children:
         if (isinstance(j, lark.lexer.Token) and j.type == tname):
            yield j.value


class Unpacker:
   """Flattens layer tarballs, lowest first, into one directory tree, with
      the same result a union filesystem would give. For each layer, in
      order:

        1. List the members.
        2. Apply whiteouts in archive order. Opaque ones (.wh..wh..opq)
           empty their directory; others (.wh.NAME) delete NAME next to
           them.
        3. Extract the remaining content (see fs.TarFile.member_filter()).
        4. Make the tree usable by its owner and delete stray whiteouts.

      Whiteouts act on what lower layers put in the tree, which is why they
      are resolved before the layer carrying them is extracted.

      Best effort: a layer that fails to extract is logged and the next one
      is tried anyway."""

   __slots__ = ()

   def tree_fix(self, dest):
      """Give the owner read and write on everything and execute on
         directories, and delete any whiteout files left behind."""
      # Top-down walk, so directories are fixed before we descend into them.
      for (dirpath, dirnames, filenames) in os.walk(dest):
         dirpath = fs.Path(dirpath)
         for name in dirnames:
            (dirpath // name).chmod_min()
         for name in filenames:
            if (name.startswith(fs.WH_PREFIX)):
               (dirpath // name).remove()
            else:
               (dirpath // name).chmod_min()

   def unpack(self, layers, dest):
      """Unpack layers (sequence of tarball paths, lowest first) into dest,
         which is created if needed. Return True if every layer extracted
         cleanly, False otherwise."""
      dest = fs.Path(dest)
      if (not layers):
         oc.ERROR("no layers to unpack")
         return False
      dest.mkdirs()
      status = True
      for (i, path) in enumerate(layers, start=1):
         lh_short = fs.Path(path).name
         if (oc.digest_valid_p(lh_short)):
            lh_short = oc.digest_trim(lh_short)[:12]
         oc.INFO("layer %d/%d: %s: extracting" % (i, len(layers), lh_short))
         t = oc.Timer()
         members = fs.TarFile.member_names(path)
         if (members is not None):
            self.whiteouts_apply(members, dest)
         if (not fs.TarFile.unpack(path, dest)):
            oc.ERROR("layer %d/%d: %s: extraction failed"
                     % (i, len(layers), lh_short))
            status = False
         self.tree_fix(dest)
         t.log("layer %d/%d extracted" % (i, len(layers)))
      return status

   def whiteouts_apply(self, members, dest):
      """Apply the whiteouts among member names members to tree dest. Return
         the number of whiteouts found."""
      wo_ct = 0
      for name in members:
         name = fs.TarFile.member_path_clean(name)
         if (not name):
            continue
         (dir_, filename) = os.path.split(name)
         if (not filename.startswith(fs.WH_PREFIX)):
            continue
         wo_ct += 1
         if (filename == fs.WH_OPAQUE):
            # “Opaque whiteout”: remove contents of dir_.
            target = dest // dir_
            oc.DEBUG("found opaque whiteout: %s" % name)
            if (    not target.is_symlink() and target.is_dir()
                and (target // "x").within_p(dest)):
               for child in sorted(target.listdir()):
                  (target // child).remove()
         else:
            # “Explicit whiteout”: remove same-name file without “.wh.”.
            victim = filename[len(fs.WH_PREFIX):]
            if (victim in ("", ".", "..")):
               oc.WARNING("ignoring invalid whiteout: %s" % name)
               continue
            target = dest // dir_ // victim
            oc.DEBUG("found explicit whiteout: %s" % name)
            if (target.within_p(dest)):
               target.remove()
      if (wo_ct > 0):
         oc.VERBOSE("applied %d whiteouts" % wo_ct)
      return wo_ct

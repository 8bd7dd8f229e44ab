import json
import os
import pprint
import re
import shutil
import stat
import sys
import tarfile

from . import core as oc


## Constants ##

# Layer members we never extract, as regular expressions matched against the
# member path with leading “./” and “/” removed. Device files are excluded by
# type, not by name; see TarFile.member_filter().
EXTRACT_EXCLUDE = (re.compile(r"^dev/."),
                   re.compile(r"^etc/udev/devices/."),
                   re.compile(r"(^|/)\.wh\.[^/]*$"))

# Whiteout prefix and the special opaque whiteout name.
WH_PREFIX = ".wh."
WH_OPAQUE = ".wh..wh..opq"


## Classes ##

class Path(os.PathLike):
   """Path class roughly corresponding to pathlib.PosixPath, but (like
      Charliecloud’s) it joins with “//” rather than “/”, and that operator
      ignores the fact that the right operand is absolute:

        >>> a = Path("/foo/bar")
        >>> a // "/baz"
        Path('/foo/bar/baz')
        >>> "/baz" // a
        Path('/baz/foo/bar')

      The layout of the local repository is built out of these joins, so
      member names from tarballs and digests can never escape the directory
      they are joined onto by being absolute."""

   # Store the path as a string. Assume:
   #
   #   1. No multiple slashes.
   #   2. Length at least one character.
   #   3. Does not begin with redundant “./” (but can be just “.”).
   #
   # Call self._tidy() if these can’t be assumed.
   __slots__ = ("path",)

   def __init__(self, *segments):
      """e.g.:

           >>> Path("/a/b")
           Path('/a/b')
           >>> Path("/", "a", "b")
           Path('/a/b')
           >>> Path("a/b")
           Path('a/b')
           >>> Path("//")
           Path('/')
           >>> Path("")
           Path('.')
           >>> Path("./a")
           Path('a')"""
      segments = [    (i.__fspath__() if isinstance(i, os.PathLike) else i)
                  for i in segments]
      self.path = "/".join(segments)
      self._tidy()

   ## Internal ##

   def _tidy(self):
      "Repair self.path assumptions (see attribute docs above)."
      if (self.path == ""):
         self.path = "."
      else:
         self.path = re.sub(r"/{2,}", "/", self.path)
         self.path = re.sub(r"^\./", "", self.path)

   ## pathlib.PosixPath API ##

   def __eq__(self, other):
      """e.g.:

           >>> Path("a") == Path("a")
           True
           >>> Path("a") == Path("b")
           False
           >>> Path("a/b") == Path("a//b")
           True"""
      if (not isinstance(other, Path)):
         return NotImplemented
      return (self.path == other.path)

   def __fspath__(self):
      return self.path

   def __hash__(self):
      return hash(self.path)

   def __repr__(self):
      return 'Path(%s)' % repr(self.path)

   def __str__(self):
      return self.path

   @property
   def name(self):
      """e.g.:

           >>> Path("/a/b").name
           'b'
           >>> Path("a/b/").name
           'b'
           >>> Path("sha256:abc").name
           'sha256:abc'"""
      if (self.root_p):
         return "/"
      return self.untrailed.path.rpartition("/")[-1]

   @property
   def parent(self):
      """e.g.:

           >>> Path("/a/b").parent
           Path('/a')
           >>> Path("/a").parent
           Path('/')
           >>> Path("a").parent
           Path('.')"""
      if (self.root_p):
         return self.__class__(self.path)
      (parent, slash, _) = self.untrailed.path.rpartition("/")
      if (parent != ""):
         return self.__class__(parent)
      elif (slash == "/"):  # absolute path with single non-root component
         return self.__class__("/")
      else:                 # relative path with single component
         return self.__class__(".")

   def exists(self, links=False):
      """Return True if I exist, False otherwise. Iff links, follow symlinks.

           >>> Path("/").exists()
           True
           >>> Path("/doesnotexist").exists()
           False"""
      try:
         os.stat(self, follow_symlinks=links)
      except FileNotFoundError:
         return False
      except OSError as x:
         oc.FATAL("can’t stat: %s: %s" % (self, x.strerror))
      return True

   def is_dir(self):
      return os.path.isdir(self)

   def is_file(self):
      return os.path.isfile(self)

   def is_symlink(self):
      return os.path.islink(self)

   def open(self, mode, *args, **kwargs):
      return oc.ossafe(open, "can’t open for %s: %s" % (mode, self),
                       self, mode, *args, **kwargs)

   def readlink(self):
      return self.__class__(oc.ossafe(os.readlink, "can’t readlink: %s" % self,
                                      self))

   def relative_to(self, other):
      """e.g.:

           >>> Path("/a/b").relative_to("/a")
           Path('b')
           >>> Path("/a/b").relative_to("/c")
           Traceback (most recent call last):
             ...
           ValueError: /a/b not a subpath of /c"""
      if (isinstance(other, Path)):
         other = other.untrailed.__fspath__()
      common = os.path.commonpath([self, other])
      if (common != other):
         raise ValueError("%s not a subpath of %s" % (self, other))
      return self.__class__(self.path[  len(other)
                                      + (0 if other == "/" else 1):])

   def rename(self, path_new):
      path_new = self.__class__(path_new)
      oc.ossafe(os.rename, "can’t rename: %s -> %s" % (self, path_new),
                self, path_new)
      return path_new

   def stat(self, links):
      return oc.ossafe(os.stat, "can’t stat: %s" % self, self,
                       follow_symlinks=links)

   def symlink_to(self, target, clobber=False):
      """Make me a symlink pointing to target. If clobber, replace whatever
         (non-directory) is already here."""
      if (clobber and (self.is_symlink() or self.is_file())):
         self.unlink()
      try:
         os.symlink(target, self)
      except FileExistsError:
         if (not self.is_symlink()):
            oc.FATAL("can’t symlink: source exists and isn’t a symlink: %s"
                     % self)
         if (self.readlink() != self.__class__(target)):
            oc.FATAL("can’t symlink: %s exists; want target %s but existing is %s"
                     % (self, target, self.readlink()))
      except OSError as x:
         oc.FATAL("can’t symlink: %s -> %s: %s" % (self, target, x.strerror))

   def unlink(self, missing_ok=False):
      if (missing_ok and not os.path.lexists(self)):
         return
      oc.ossafe(os.unlink, "can’t unlink: %s" % self, self)

   ## Extensions ##

   def __floordiv__(self, right):
      left = self.path
      try:
         right = right.__fspath__()
      except AttributeError:
         pass  # assume right is a string
      return self.__class__(left + "/" + right)

   def __rfloordiv__(self, left):
      return self.__class__(left).__floordiv__(self)

   @property
   def root_p(self):
      return (self.path == "/")

   @property
   def untrailed(self):
      """Return self with trailing slash removed (if any). E.g.:

         >>> Path("a/").untrailed
         Path('a')
         >>> Path("/").untrailed
         Path('/')"""
      if (self.root_p):
         return self.__class__(self.path)
      else:
         return self.__class__(self.path.rstrip("/"))

   def chmod_min(self, st=None):
      """Set my permissions to at least 0o700 for directories and 0o600
         otherwise. If given, st is a stat object for self, to avoid another
         stat(2) call. Return the new file mode (permissions and file type).

         For symlinks, do nothing, because we don’t want to follow symlinks
         and follow_symlinks=False (or os.lchmod) is not supported on Linux.
         (Also, symlink permissions are ignored on Linux, so it doesn’t matter
         anyway.)"""
      if (st is None):
         st = self.stat(False)
      if (stat.S_ISLNK(st.st_mode)):
         return st.st_mode
      perms_old = stat.S_IMODE(st.st_mode)
      perms_new = perms_old | (0o700 if stat.S_ISDIR(st.st_mode) else 0o600)
      if (perms_new != perms_old):
         oc.TRACE("fixing permissions: %s: %03o -> %03o"
                  % (self, perms_old, perms_new))
         oc.ossafe(os.chmod, "can’t chmod: %s" % self, self, perms_new)
      return (st.st_mode | perms_new)

   def copy(self, dst):
      """Copy file myself to dst, including metadata, overwriting dst if it
         exists. dst must be the actual destination path, i.e., it may not be
         a directory. Follows symlinks in self, since in the local repository
         those are layer links and we want the blob."""
      dst = self.__class__(dst)
      if (os.path.lexists(dst)):
         dst.unlink()
      try:
         shutil.copyfile(self, dst)
      except OSError as x:
         oc.FATAL("can’t copy data: %s -> %s: %s" % (self, dst, x.strerror))
      try:
         shutil.copystat(self, dst)
      except OSError as x:
         oc.FATAL("can’t copy metadata: %s -> %s: %s"
                  % (self, dst, x.strerror))

   def file_ensure_exists(self):
      """If the final element of path exists (without dereferencing if it’s a
         symlink), do nothing; otherwise, create it as an empty regular file."""
      if (not os.path.lexists(self)):
         fp = self.open("w")
         oc.close_(fp)

   def file_read_all(self, text=True):
      """Return the contents of file at path, or exit with error. If text,
         read in “rt” mode with UTF-8 encoding; otherwise, read in mode “rb”.

           >>> Path("/dev/null").file_read_all()
           ''
           >>> Path("/dev/null").file_read_all(False)
           b''"""
      if (text):
         mode = "rt"
         encoding = "UTF-8"
      else:
         mode = "rb"
         encoding = None
      fp = self.open(mode, encoding=encoding)
      data = oc.ossafe(fp.read, "can’t read: %s" % self)
      oc.close_(fp)
      return data

   def file_size(self, follow_symlinks=False):
      """Return the size of file at path in bytes.

           >>> Path("/dev/null").file_size()
           0"""
      return self.stat(follow_symlinks).st_size

   def file_write(self, content):
      if (isinstance(content, str)):
         content = content.encode("UTF-8")
      fp = self.open("wb")
      oc.ossafe(fp.write, "can’t write: %s" % self, content)
      oc.close_(fp)

   def json_from_file(self, msg, fail_ok=False):
      """Parse the file at path as JSON and return the result. If fail_ok,
         return None if the file is missing, unreadable or malformed;
         otherwise that is a fatal error."""
      oc.DEBUG("loading JSON: %s: %s" % (msg, self))
      if (fail_ok and not self.is_file()):
         oc.VERBOSE("%s: not found: %s" % (msg, self))
         return None
      text = self.file_read_all(False)
      try:
         text = text.decode("UTF-8")
      except UnicodeDecodeError as x:
         if (fail_ok):
            oc.VERBOSE("%s: not UTF-8: %s: %s" % (msg, self, x.reason))
            return None
         oc.FATAL("can’t decode JSON: %s: %s" % (self, x.reason))
      oc.TRACE("text:\n%s" % text)
      try:
         data = json.loads(text)
         oc.TRACE("result:\n%s" % pprint.pformat(data, indent=2))
      except json.JSONDecodeError as x:
         if (fail_ok):
            oc.VERBOSE("%s: can’t parse JSON: %s:%d: %s"
                       % (msg, self, x.lineno, x.msg))
            return None
         oc.FATAL("can’t parse JSON: %s:%d: %s" % (self, x.lineno, x.msg))
      return data

   def json_to_file(self, data, **kwargs):
      self.file_write(json.dumps(data, **kwargs))

   def listdir(self):
      """Return set of entries in directory path, as strings, without self (.)
         and parent (..)."""
      return set(oc.ossafe(os.listdir, "can’t list: %s" % self, self))

   def mkdirs(self, exist_ok=True):
      "Like “mkdir -p”."
      oc.TRACE("ensuring directory and parents: %s" % self)
      try:
         os.makedirs(self, exist_ok=exist_ok)
      except OSError as x:
         # x.filename might be an intermediate directory
         oc.FATAL("can’t mkdir: %s: %s: %s" % (self, x.filename, x.strerror))

   def remove(self):
      """Remove whatever is at path: symlink, file or directory tree, without
         following symlinks. Return True if the path no longer exists, False
         (with a warning) if something went wrong. Missing is not an
         error."""
      try:
         if (os.path.islink(self) or not os.path.isdir(self)):
            os.unlink(self)
         else:
            self.chmod_tree_min()
            shutil.rmtree(self)
      except FileNotFoundError:
         pass
      except (OSError, oc.Fatal_Error) as x:
         why = x.strerror if isinstance(x, OSError) else x.args[0]
         oc.WARNING("can’t remove: %s: %s" % (self, why))
         return False
      return True

   def chmod_tree_min(self):
      """Apply chmod_min() to me and every directory below me, so that
         read-only directories from image layers don’t block deletion."""
      self.chmod_min()
      for (dir_, subdirs, _) in os.walk(self):
         for subdir in subdirs:
            (self.__class__(dir_) // subdir).chmod_min()

   def rmdir_p(self):
      """Remove me if I am an empty directory; return True if removed, False
         otherwise (including if not empty)."""
      try:
         os.rmdir(self)
      except OSError:
         return False
      return True

   def within_p(self, dir_):
      """Return True if my parent directory, with symlinks resolved, is dir_
         or below it, i.e. operating on me can’t escape dir_.

           >>> Path("/usr/bin/../../etc").within_p("/usr")
           False
           >>> Path("/usr/bin/env").within_p("/usr")
           True"""
      parent = os.path.realpath(os.path.dirname(self.path))
      return oc.prefix_path(os.path.realpath(dir_), parent)


class TarFile(tarfile.TarFile):

   # This subclass augments tarfile.TarFile with what we need to use it as
   # the layer extraction and archive creation capability: member filtering
   # (no devices, no /dev contents, no whiteout markers), no ownership, no
   # setuid/setgid, permissions masked by the umask, and replacement of one
   # file type with another between layers. While the tarfile module docs say
   # “do not use this class [TarFile] directly”, they also say “[t]he
   # tarfile.open() function is actually a shortcut” to class method
   # TarFile.open(), and the source code recommends subclassing TarFile.
   #
   # The standard library class has problems with symlinks and replacing one
   # file type with another (e.g. a directory in layer 1 becomes a symlink in
   # layer 2). We work around this with manual deletions in clobber().

   umask = None

   @classmethod
   def archive(class_, src, dst):
      """Create an uncompressed tarball at dst containing the contents of
         directory src, with member names relative to src (i.e., “./foo”).
         If dst is “-”, write to standard output. Return True on success,
         False on failure."""
      src = Path(src)
      try:
         if (str(dst) == "-"):
            fp = class_.open(fileobj=sys.stdout.buffer, mode="w|",
                             format=tarfile.PAX_FORMAT)
         else:
            fp = class_.open(dst, "w", format=tarfile.PAX_FORMAT)
         with fp:
            fp.add_(src)
      except (OSError, tarfile.TarError) as x:
         oc.ERROR("can’t write tarball: %s: %s" % (dst, x))
         return False
      return True

   @classmethod
   def member_names(class_, path):
      """Return the list of member names in tarball path, in archive order,
         without extracting. Return None if it can’t be read."""
      try:
         with class_.open(path) as fp:
            return fp.getnames()
      except (OSError, tarfile.TarError) as x:
         oc.ERROR("can’t list tarball: %s: %s" % (path, x))
         return None

   @staticmethod
   def member_path_clean(name):
      """Return member name name normalized, with leading “/” and “./”
         removed (the empty string for the archive root itself), or None if
         it climbs out of the archive root with “..”.

           >>> TarFile.member_path_clean("./etc/passwd")
           'etc/passwd'
           >>> TarFile.member_path_clean("/usr/bin/")
           'usr/bin'
           >>> TarFile.member_path_clean("a/../../b") is None
           True"""
      name = os.path.normpath(name.lstrip("/"))
      if (name == "."):
         return ""
      if (".." in name.split("/")):
         return None
      return name

   @classmethod
   def unpack(class_, path, dst):
      """Extract tarball path into directory dst using member_filter(). If path
         is “-”, read standard input. Return True on success, False on
         failure (which may be partial: members extracted before the problem
         stay)."""
      if (not hasattr(tarfile, "data_filter")):
         # extractall(filter=...) is missing from older patch releases
         oc.FATAL("Python tarfile module lacks extraction filters",
                  "need Python 3.9.17, 3.10.12, 3.11.4, 3.12 or later")
      try:
         if (str(path) == "-"):
            fp = class_.open(fileobj=sys.stdin.buffer, mode="r|*")
         else:
            fp = class_.open(path)
         with fp:
            fp.extractall(path=dst, filter=fp.member_filter)
      except (OSError, tarfile.TarError) as x:
         oc.ERROR("can’t extract: %s: %s" % (path, x))
         return False
      return True

   # Need new method name because add() is called recursively and we don’t
   # want those internal calls to get our special sauce.
   def add_(self, src):
      def filter_(ti):
         ti.uid = 0
         ti.uname = "root"
         ti.gid = 0
         ti.gname = "root"
         return ti
      super().add(src, arcname=".", filter=filter_)

   def chmod(self, tarinfo, targetpath):
      # No “same permissions”: archive mode, masked by the umask, plus what
      # the owner needs to keep managing the file.
      if (self.umask is None):
         self.__class__.umask = os.umask(0o022)
         os.umask(self.umask)
      mode = tarinfo.mode & ~self.umask & 0o777
      mode |= 0o700 if tarinfo.isdir() else 0o600
      try:
         os.chmod(targetpath, mode)
      except OSError as x:
         raise tarfile.ExtractError("could not change mode: %s" % x)

   def chown(self, tarinfo, targetpath, numeric_owner):
      # No “same owner”: files always belong to the invoking user.
      pass

   def clobber(self, targetpath, regulars=False, symlinks=False, dirs=False):
      assert (regulars or symlinks or dirs)
      try:
         st = os.lstat(targetpath)
      except FileNotFoundError:
         # We could move this except clause after all the stat.S_IS* calls,
         # but that risks catching FileNotFoundError that came from somewhere
         # other than lstat().
         st = None
      if (st is not None):
         if (stat.S_ISREG(st.st_mode)):
            if (regulars):
               os.unlink(targetpath)
         elif (stat.S_ISLNK(st.st_mode)):
            if (symlinks):
               os.unlink(targetpath)
         elif (stat.S_ISDIR(st.st_mode)):
            if (dirs):
               Path(targetpath).chmod_tree_min()
               shutil.rmtree(targetpath)
         else:
            os.unlink(targetpath)  # device, FIFO or socket from before

   def makedir(self, tarinfo, targetpath):
      # Note: This gets called a lot, e.g. once for each component in the path
      # of the member being extracted.
      oc.TRACE("makedir: %s" % targetpath)
      self.clobber(targetpath, regulars=True, symlinks=True)
      super().makedir(tarinfo, targetpath)

   def makefile(self, tarinfo, targetpath):
      oc.TRACE("makefile: %s" % targetpath)
      self.clobber(targetpath, regulars=True, symlinks=True, dirs=True)
      super().makefile(tarinfo, targetpath)

   def makelink(self, tarinfo, targetpath):
      oc.TRACE("makelink: %s -> %s" % (targetpath, tarinfo.linkname))
      self.clobber(targetpath, regulars=True, symlinks=True, dirs=True)
      super().makelink(tarinfo, targetpath)

   def member_filter(self, ti, dst):
      """Extraction filter (see tarfile “extraction filters”). Return the
         member to extract, possibly modified, or None to skip it."""
      name = self.member_path_clean(ti.name)
      if (name is None):
         oc.WARNING("ignoring up-level member: %s" % ti.name)
         return None
      if (name == ""):
         return None  # “.” itself
      ti.name = name
      if (ti.isdev()):
         oc.VERBOSE("ignoring device file: %s" % name)
         return None
      if (any(rx.search(name) for rx in EXTRACT_EXCLUDE)):
         oc.TRACE("excluding member: %s" % name)
         return None
      if (ti.issym() or ti.islnk()):
         if (not self.link_fix(ti)):
            return None
      if (ti.mode & (stat.S_ISUID | stat.S_ISGID)):
         oc.VERBOSE("stripping unsafe setuid/setgid bit: %s" % name)
         ti.mode &= ~(stat.S_ISUID | stat.S_ISGID)
      ti.uid = os.getuid()
      ti.gid = os.getgid()
      return ti

   @staticmethod
   def link_fix(ti):
      """Deal with link (symbolic or hard) weirdness. Absolute symlink targets
         are made relative so they resolve within the root tree; hard link
         targets have their leading slash stripped. Return False if the link
         is unusable, True otherwise."""
      if (len(ti.linkname) == 0):
         oc.WARNING("ignoring link with empty target: %s" % ti.name)
         return False
      tgt = ti.linkname
      if (ti.issym()):
         if (tgt.startswith("/")):
            depth = len(ti.name.split("/")) - 1
            tgt = "/".join([".."] * depth + [tgt.lstrip("/")]) or "."
            oc.TRACE("absolute symlink: %s -> %s: changing target to: %s"
                     % (ti.name, ti.linkname, tgt))
         if (".." in os.path.normpath(os.path.join(os.path.dirname(ti.name),
                                                   tgt)).split("/")):
            oc.WARNING("ignoring symlink climbing out of image: %s -> %s"
                       % (ti.name, ti.linkname))
            return False
      else:
         tgt = TarFile.member_path_clean(tgt)
         if (tgt is None):
            oc.WARNING("ignoring hard link climbing out of image: %s -> %s"
                       % (ti.name, ti.linkname))
            return False
      ti.linkname = tgt
      return True

import argparse
import atexit
import datetime
import enum
import hashlib
import os
import platform
import re
import sys
import time
import traceback

from . import version


## Enums ##

# Layer pull policy.
class Pull_Policy(enum.Enum):
   MISSING = "missing"
   ALWAYS = "always"
   NEVER = "never"


## Constants ##

# Architectures. This maps the “machine” field returned by uname(2), also
# available as "uname -m" and platform.machine(), into architecture names that
# image registries use. Registry architecture and variant are separated by a
# slash. Note it is *not* 1-to-1: multiple uname(2) architectures map to the
# same registry architecture.
ARCH_MAP = { "x86_64":    "amd64",
             "amd64":     "amd64",
             "armv5l":    "arm/v5",
             "armv6l":    "arm/v6",
             "aarch32":   "arm/v7",
             "armv7l":    "arm/v7",
             "aarch64":   "arm64",
             "arm64":     "arm64",
             "armv8l":    "arm64",
             "i386":      "386",
             "i686":      "386",
             "mips64le":  "mips64le",
             "ppc64le":   "ppc64le",
             "riscv64":   "riscv64",
             "s390x":     "s390x" }  # a.k.a. IBM Z

# Shape of a digest we know how to verify.
DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")

# Chunk size in bytes when streaming HTTP and hashing files.
HTTP_CHUNK_SIZE = 256 * 1024

# Registry defaults. Keys of REGISTRIES are host names that map to a
# (registry URL, index URL) pair.
INDEX_URL_DEFAULT = "https://hub.docker.com"
REGISTRY_URL_DEFAULT = "https://registry-1.docker.io"
REGISTRIES = { "docker.io": (REGISTRY_URL_DEFAULT, INDEX_URL_DEFAULT) }

# Maximum number of HTTP redirects followed for one request.
REDIRECTS_MAX = 3


## Globals ##

# Logging; set using init() below.
verbose = 0          # Verbosity level.
log_quiet = 0        # Quietness level; 1 suppresses INFO, 2 also WARNING.
log_festoon = False  # If true, prepend pid and timestamp to chatter.
log_fp = sys.stderr  # File object to print logs to.
trace_fatal = False  # Add abbreviated traceback to fatal error hint.


## Exceptions ##

class Fatal_Error(Exception):
   def __init__(self, *args, **kwargs):
      self.args = args
      self.kwargs = kwargs


## Classes ##

class ArgumentParser(argparse.ArgumentParser):

   class HelpFormatter(argparse.HelpFormatter):

      # Suppress duplicate metavar printing when option has both short and
      # long flavors. E.g., instead of:
      #
      #   -s DIR, --storage DIR  set storage directory to DIR
      #
      # print:
      #
      #   -s, --storage DIR      set storage directory to DIR
      def _format_action_invocation(self, action):
         if (not action.option_strings or action.nargs == 0):
            return super()._format_action_invocation(action)
         default = self._get_default_metavar_for_optional(action)
         args_string = self._format_args(action, default)
         return ', '.join(action.option_strings) + ' ' + args_string

   def __init__(self, sub_title=None, sub_metavar=None, *args, **kwargs):
      super().__init__(formatter_class=self.HelpFormatter, *args, **kwargs)
      self._optionals.title = "options"
      if (sub_title is not None):
         self.subs = self.add_subparsers(title=sub_title, metavar=sub_metavar)

   def add_parser(self, title, desc, *args, **kwargs):
      return self.subs.add_parser(title, help=desc, description=desc,
                                  *args, **kwargs)

   def parse_args(self, *args, **kwargs):
      cli = super().parse_args(*args, **kwargs)
      # Bring in environment variables that set options.
      if (getattr(cli, "pull", None) is None):
         try:
            cli.pull = Pull_Policy(os.environ.get("OCISTASH_PULL", "missing"))
         except ValueError:
            FATAL("$OCISTASH_PULL: invalid pull policy: %s"
                  % os.environ["OCISTASH_PULL"])
      return cli


class Config:
   """Configuration for one invocation. Built once at startup and handed to
      everything that needs paths or registry defaults; there are no global
      storage paths.

      topdir ......... root of the local repository; other directories are
                       derived from it.

      registry_url ... default registry when the image reference names none.

      index_url ...... index matching registry_url.

      registries ..... dict mapping registry host aliases to (registry URL,
                       index URL) pairs.

      tls_verify ..... verify TLS certificates? Passed to requests.

      redirects ...... maximum number of HTTP redirects to follow."""

   __slots__ = ("index_url",
                "redirects",
                "registries",
                "registry_url",
                "tls_verify",
                "topdir")

   def __init__(self, topdir=None, registry_url=None, index_url=None,
                tls_verify=True):
      if (topdir is None):
         topdir = self.topdir_default()
      self.topdir = os.path.abspath(os.fspath(topdir))
      self.registry_url = registry_url or REGISTRY_URL_DEFAULT
      self.index_url = index_url or INDEX_URL_DEFAULT
      self.registries = dict(REGISTRIES)
      self.tls_verify = tls_verify
      self.redirects = REDIRECTS_MAX

   @property
   def containersdir(self):
      return os.path.join(self.topdir, "containers")

   @property
   def layersdir(self):
      return os.path.join(self.topdir, "layers")

   @property
   def reposdir(self):
      return os.path.join(self.topdir, "repos")

   @staticmethod
   def topdir_default():
      path = os.environ.get("OCISTASH_DIR")
      if (path is not None):
         if (not os.path.isabs(path)):
            FATAL("$OCISTASH_DIR: not absolute path: %s" % path)
         return path
      return os.path.join(os.path.expanduser("~"), ".ocistash")


class Progress:
   """Simple progress meter for countable things that updates at most once per
      second. Writes first update upon creation. If length is None, then just
      count up (this is for registries that sometimes don’t provide a
      Content-Length header for blobs).

      The purpose of the divisor is to allow counting things that are much
      more numerous than what we want to display; for example, to count bytes
      but report MiB, use a divisor of 1048576.

      By default, moves to a new line at first update, then assumes exclusive
      control of this line in the terminal, rewriting the line as needed. If
      output is not a TTY or global log_festoon is set, each update is one log
      entry with no overwriting."""

   __slots__ = ("display_last",
                "divisor",
                "msg",
                "length",
                "unit",
                "overwrite_p",
                "precision",
                "progress")

   def __init__(self, msg, unit, divisor, length):
      self.msg = msg
      self.unit = unit
      self.divisor = divisor
      self.length = length
      if (not log_fp.isatty() or log_festoon):
         self.overwrite_p = False  # each update on new line
      else:
         self.overwrite_p = True   # updates all use same line
      self.precision = 1 if self.divisor >= 1000 else 0
      self.progress = 0
      self.display_last = float("-inf")
      self.update(0)

   def update(self, increment, last=False):
      now = time.monotonic()
      self.progress += increment
      if (last or now - self.display_last > 1):
         if (self.length is None or self.length == 0):
            line = ("%s: %.*f %s"
                    % (self.msg,
                       self.precision, self.progress / self.divisor,
                       self.unit))
         else:
            ct = "%.*f/%.*f" % (self.precision, self.progress / self.divisor,
                                self.precision, self.length / self.divisor)
            pct = "%d%%" % (100 * self.progress / self.length)
            if (ct == "0.0/0.0"):
               # too small, don’t print count
               line = "%s: %s" % (self.msg, pct)
            else:
               line = ("%s: %s %s (%s)" % (self.msg, ct, self.unit, pct))
         INFO(line, end=("\r" if self.overwrite_p else "\n"))
         self.display_last = now

   def done(self):
      self.update(0, True)
      if (self.overwrite_p):
         INFO("")  # newline to release display line


class Progress_Writer:
   """Wrapper around a binary file object to maintain a progress meter while
      data are written."""

   __slots__ = ("fp",
                "msg",
                "path",
                "progress")

   def __init__(self, path, msg):
      self.fp = None
      self.msg = msg
      self.path = path
      self.progress = None

   def close(self):
      if (self.progress is not None):
         self.progress.done()
         close_(self.fp)
         self.progress = None

   def start(self, length):
      self.progress = Progress(self.msg, "MiB", 2**20, length)
      self.fp = self.path.open("wb")

   def write(self, data):
      self.progress.update(len(data))
      ossafe(self.fp.write, "can’t write: %s" % self.path, data)


class Timer:

   __slots__ = ("start")

   def __init__(self):
      self.start = time.time()

   def log(self, msg):
      VERBOSE("%s in %.3fs" % (msg, time.time() - self.start))


## Supporting functions ##

def DEBUG(msg, hint=None, **kwargs):
   if (verbose >= 2):
      log(msg, hint, None, "38;5;6m", "", **kwargs)  # dark cyan (same as 36m)

def ERROR(msg, hint=None, trace=None, **kwargs):
   log(msg, hint, trace, "1;31m", "error: ", **kwargs)  # bold red

def FATAL(msg, hint=None, **kwargs):
   if (trace_fatal):
      # One-line traceback, skipping top entry (which is always bootstrap code
      # calling main()) and last entry (this function).
      tr = ", ".join("%s:%d:%s" % (os.path.basename(f.filename),
                                   f.lineno, f.name)
                     for f in reversed(traceback.extract_stack()[1:-1]))
   else:
      tr = None
   raise Fatal_Error(msg, hint, tr, **kwargs)

def INFO(msg, hint=None, **kwargs):
   "Note: Use print() for output; this function is for logging."
   if (log_quiet == 0):
      log(msg, hint, None, "33m", "", **kwargs)  # yellow

def TRACE(msg, hint=None, **kwargs):
   if (verbose >= 3):
      log(msg, hint, None, "38;5;6m", "", **kwargs)  # dark cyan (same as 36m)

def VERBOSE(msg, hint=None, **kwargs):
   if (verbose >= 1 and log_quiet == 0):
      log(msg, hint, None, "38;5;14m", "", **kwargs)  # light cyan

def WARNING(msg, hint=None, **kwargs):
   if (log_quiet < 2):
      log(msg, hint, None, "31m", "warning: ", **kwargs)  # red

def bytes_hash(data):
   "Return the hash of data, as a hex string with no leading algorithm tag."
   h = hashlib.sha256()
   h.update(data)
   return h.hexdigest()

def close_(fp):
   try:
      path = fp.name
   except AttributeError:
      path = "(no path)"
   ossafe(fp.close, "can’t close: %s" % path)

def color_reset(*fps):
   for fp in fps:
      color_set("0m", fp)

def color_set(color, fp):
   if (fp.isatty()):
      print("\033[" + color, end="", flush=True, file=fp)

def digest_trim(d):
   """Remove the algorithm tag from digest d and return the rest.

        >>> digest_trim("sha256:foobar")
        'foobar'

      Note: Does not validate the form of the rest."""
   try:
      return d.split(":", maxsplit=1)[1]
   except AttributeError:
      FATAL("not a string: %s" % repr(d))
   except IndexError:
      FATAL("no algorithm tag: %s" % d)

def digest_valid_p(d):
   """Return True if d is a digest string we can verify, False otherwise.

        >>> digest_valid_p("sha256:" + "0" * 64)
        True
        >>> digest_valid_p("sha256:abc")
        False
        >>> digest_valid_p(None)
        False"""
   return (isinstance(d, str) and DIGEST_RE.search(d) is not None)

def digest_verify(path, digest):
   """Return True if the file at path has the given digest, False otherwise.
      A file that doesn’t exist (or isn’t a regular file) never verifies. A
      digest of a shape we can’t check is accepted unverified."""
   if (not os.path.isfile(path)):
      return False
   if (not digest_valid_p(digest)):
      VERBOSE("can’t verify digest, accepting: %s" % digest)
      return True
   try:
      actual = file_hash(path)
   except OSError as x:
      WARNING("can’t read for digest: %s: %s" % (path, x.strerror))
      return False
   if (actual != digest_trim(digest)):
      VERBOSE("digest mismatch: %s: expected %s, got %s"
              % (path, digest_trim(digest)[:12], actual[:12]))
      return False
   return True

def exit(code):
   sys.exit(code)

def file_hash(path):
   """Return the hash of the file at path, as a hex string with no leading
      algorithm tag. Raises OSError if the file can’t be read."""
   h = hashlib.sha256()
   with open(path, "rb") as fp:
      for chunk in iter(lambda: fp.read(HTTP_CHUNK_SIZE), b""):
         h.update(chunk)
   return h.hexdigest()

def init(cli):
   # logging
   global log_festoon, log_fp, log_quiet, trace_fatal, verbose
   log_quiet = cli.quiet
   verbose = min(cli.verbose, 3)
   trace_fatal = (cli.debug or bool(os.environ.get("OCISTASH_DEBUG", False)))
   if (trace_fatal and log_quiet > 0):
      log_quiet = 0
      trace_fatal = False
      FATAL("“debug” and “quiet” incompatible")
   if ("OCISTASH_LOG_FESTOON" in os.environ):
      log_festoon = True
   file_ = os.getenv("OCISTASH_LOG_FILE")
   if (file_ is not None):
      verbose = max(verbose, 1)
      log_fp = ossafe(open, "can’t open log file: %s" % file_, file_, "at")
   atexit.register(color_reset, log_fp)
   VERBOSE("version: %s" % version.VERSION)
   VERBOSE("verbose level: %d" % verbose)

def log(msg, hint, trace, color, prefix, end="\n"):
   if (color is not None):
      color_set(color, log_fp)
   if (log_festoon):
      ts = datetime.datetime.now().isoformat(timespec="milliseconds")
      festoon = ("%5d %s  " % (os.getpid(), ts))
   else:
      festoon = ""
   print(festoon, prefix, msg, sep="", file=log_fp, end=end, flush=True)
   if (hint is not None):
      print(festoon, "hint: ", hint, sep="", file=log_fp, flush=True)
   if (trace is not None):
      print(festoon, "trace: ", trace, sep="", file=log_fp, flush=True)
   if (color is not None):
      color_reset(log_fp)

def now_utc_iso8601():
   return (datetime.datetime.now(datetime.timezone.utc)
           .replace(tzinfo=None).isoformat(timespec="seconds") + "Z")

def ossafe(f, msg, *args, **kwargs):
   """Call f with args and kwargs. Catch OSError and other problems and fail
      with a nice error message."""
   try:
      return f(*args, **kwargs)
   except OSError as x:
      FATAL("%s: %s" % (msg, x.strerror))

def platform_host():
   """Return the platform of the host as a tuple (os, architecture, variant)
      using registry vocabulary. Variant may be the empty string."""
   os_ = sys.platform
   if (os_.startswith("linux") or os_ == "android"):
      os_ = "linux"
   elif (os_ == "win32"):
      os_ = "windows"
   arch_uname = platform.machine()
   arch = ARCH_MAP.get(arch_uname, arch_uname.lower())
   VERBOSE("host platform from uname: %s %s -> %s/%s"
           % (sys.platform, arch_uname, os_, arch))
   (arch, _, variant) = arch.partition("/")
   return (os_, arch, variant)

def platform_str(os_, arch, variant=""):
   """e.g.:

        >>> platform_str("linux", "arm", "v7")
        'linux/arm/v7'
        >>> platform_str("linux", "amd64")
        'linux/amd64'"""
   if (variant):
      return "%s/%s/%s" % (os_, arch, variant)
   return "%s/%s" % (os_, arch)

def prefix_path(prefix, path):
   """Return True if prefix is a parent directory of path.
      Assume that prefix and path are strings."""
   return prefix == path or (prefix + '/' == path[:len(prefix) + 1])

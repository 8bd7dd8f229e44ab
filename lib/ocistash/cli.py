import argparse
import sys

from . import core as oc
from . import misc
from . import pull
from . import repository as rp


## Constants ##

# Options that every subcommand accepts, before or after the subcommand name.
# Defaults are set on the main parser only.
COMMON_OPTS = \
   { ("-s", "--storage"):
     { "metavar": "DIR",
       "help": "set local repository directory to DIR" },
     ("--registry",):
     { "metavar": "URL",
       "help": "registry to use when the image reference names none" },
     ("--index",):
     { "metavar": "URL",
       "help": "index matching --registry" },
     ("--tls-no-verify",):
     { "action": "store_true",
       "help": "don’t verify registry certificates (dangerous!)" },
     ("-v", "--verbose"):
     { "action": "count",
       "help": "print extra chatter (can be repeated)" },
     ("-q", "--quiet"):
     { "action": "count",
       "help": "print less output (can be repeated)" },
     ("--debug",):
     { "action": "store_true",
       "help": "add short traceback to fatal error hints" } }

COMMON_DEFAULTS = { "storage": None,
                    "registry": None,
                    "index": None,
                    "tls_no_verify": False,
                    "verbose": 0,
                    "quiet": 0,
                    "debug": False }


## Main ##

def main(argv=None):
   try:
      return main_(argv)
   except oc.Fatal_Error as x:
      oc.ERROR(*x.args, **x.kwargs)
      return 1

def main_(argv):
   ap = parser_build()
   if (argv is None):
      argv = sys.argv[1:]
   if (len(argv) < 1):
      ap.print_help(file=sys.stderr)
      return 1
   cli = ap.parse_args(argv)
   if (not hasattr(cli, "func")):
      ap.print_help(file=sys.stderr)
      return 1
   oc.init(cli)
   config = oc.Config(cli.storage,
                      url_fix(cli.registry), url_fix(cli.index),
                      tls_verify=not cli.tls_no_verify)
   oc.VERBOSE("storage: %s" % config.topdir)
   repo = rp.Repository(config)
   repo.layout_ensure()
   return cli.func(cli, repo)


## Functions ##

def add_opts(p, dispatch):
   p.set_defaults(func=dispatch)
   for (args, kwargs) in COMMON_OPTS.items():
      p.add_argument(*args, default=argparse.SUPPRESS, **kwargs)

def parser_build():
   ap = oc.ArgumentParser(
      prog="ocistash",
      description="Pull, store, and unpack container images without root.",
      sub_title="subcommands", sub_metavar="CMD",
      epilog="""\
environment:
  OCISTASH_DIR          default for --storage
  OCISTASH_PULL         default for --pull
  OCISTASH_LOG_FILE     append log to this file
""")
   ap.add_argument("--version", action=misc.Version,
                   help="print version and exit")
   for (args, kwargs) in COMMON_OPTS.items():
      ap.add_argument(*args, **kwargs)
   ap.set_defaults(**COMMON_DEFAULTS)

   # create
   sp = ap.add_parser("create", "create a container from an image")
   add_opts(sp, misc.create)
   sp.add_argument("--name", metavar="NAME",
                   help="also give the container alias NAME")
   sp.add_argument("-f", "--force", action="store_true",
                   help="create even if NAME is already taken")
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   # export
   sp = ap.add_parser("export", "archive container’s root filesystem")
   add_opts(sp, misc.export)
   sp.add_argument("-o", "--output", metavar="FILE", default="-",
                   help="write tarball to FILE (default: standard output)")
   sp.add_argument("container", metavar="CONTAINER")

   # images
   sp = ap.add_parser("images", "list images in local repository")
   add_opts(sp, misc.images)
   sp.add_argument("-l", "--long", action="store_true",
                   help="also list tag directory and layers")
   sp.add_argument("-p", "--platform", action="store_true",
                   help="also print image platform")

   # import
   sp = ap.add_parser("import", "import a root filesystem tarball as image")
   add_opts(sp, misc.import_)
   sp.add_argument("--platform", metavar="OS/ARCH[/VARIANT]",
                   help="platform to record (default: host’s)")
   sp.add_argument("path", metavar="TARBALL",
                   help="tarball to import, or “-” for standard input")
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   # inspect
   sp = ap.add_parser("inspect", "print container or image metadata")
   add_opts(sp, misc.inspect)
   sp.add_argument("-p", "--print-dir", action="store_true",
                   help="print directory instead of metadata")
   sp.add_argument("target", metavar="CONTAINER|IMAGE_REF")

   # load
   sp = ap.add_parser("load", "load images from a “docker save” archive")
   add_opts(sp, misc.load)
   sp.add_argument("-i", "--input", metavar="FILE", default="-",
                   help="read archive from FILE (default: standard input)")
   sp.add_argument("repo", metavar="REPO", nargs="?",
                   help="load every image into REPO, keeping tags")

   # manifest
   sp = ap.add_parser("manifest", "print an image manifest from its registry")
   add_opts(sp, misc.manifest_inspect)
   sp.add_argument("--platform", metavar="OS/ARCH[/VARIANT]",
                   help="platform to select from an image index")
   sp.add_argument("action", choices=["inspect"])
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   # name
   sp = ap.add_parser("name", "give a container an alias")
   add_opts(sp, misc.name)
   sp.add_argument("container", metavar="CONTAINER")
   sp.add_argument("name", metavar="NAME")

   # protect
   sp = ap.add_parser("protect", "protect container or image from removal")
   add_opts(sp, misc.protect)
   sp.add_argument("target", metavar="CONTAINER|IMAGE_REF")

   # ps
   sp = ap.add_parser("ps", "list containers")
   add_opts(sp, misc.ps)
   sp.add_argument("-m", "--size", action="store_true",
                   help="also print disk usage of each container")

   # pull
   sp = ap.add_parser("pull", "copy image from remote repository to local")
   add_opts(sp, pull.main)
   sp.add_argument("--platform", metavar="OS/ARCH[/VARIANT]",
                   help="platform to pull from an image index "
                        "(default: host’s)")
   sp.add_argument("--pull", metavar="POLICY", type=pull_policy,
                   help="when to download layers: missing (default), "
                        "always, never")
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   # rename
   sp = ap.add_parser("rename", "change a container alias")
   add_opts(sp, misc.rename)
   sp.add_argument("name", metavar="NAME")
   sp.add_argument("new_name", metavar="NEW_NAME")

   # rm
   sp = ap.add_parser("rm", "delete containers")
   add_opts(sp, misc.rm)
   sp.add_argument("-f", "--force", action="store_true",
                   help="delete even if protected")
   sp.add_argument("containers", metavar="CONTAINER", nargs="+")

   # rmi
   sp = ap.add_parser("rmi", "delete an image")
   add_opts(sp, misc.rmi)
   sp.add_argument("-f", "--force", action="store_true",
                   help="delete even if protected, and ignore errors")
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   # rmname
   sp = ap.add_parser("rmname", "delete a container alias")
   add_opts(sp, misc.rmname)
   sp.add_argument("name", metavar="NAME")

   # save
   sp = ap.add_parser("save", "write images to a “docker save” archive")
   add_opts(sp, misc.save)
   sp.add_argument("-o", "--output", metavar="FILE", default="-",
                   help="write archive to FILE (default: standard output)")
   sp.add_argument("image_refs", metavar="IMAGE_REF", nargs="+")

   # unprotect
   sp = ap.add_parser("unprotect", "allow removal of container or image")
   add_opts(sp, misc.unprotect)
   sp.add_argument("target", metavar="CONTAINER|IMAGE_REF")

   # verify
   sp = ap.add_parser("verify", "check an image has all its files")
   add_opts(sp, misc.verify)
   sp.add_argument("image_ref", metavar="IMAGE_REF")

   return ap

def pull_policy(s):
   """Argument type for --pull. “reuse” is an alias for “missing”.

        >>> pull_policy("reuse")
        <Pull_Policy.MISSING: 'missing'>
        >>> pull_policy("always")
        <Pull_Policy.ALWAYS: 'always'>"""
   if (s == "reuse"):
      s = "missing"
   try:
      return oc.Pull_Policy(s)
   except ValueError:
      raise argparse.ArgumentTypeError("invalid pull policy: %s" % s)

def url_fix(url):
   """Add a scheme to url if it has none; registries default to HTTPS.

        >>> url_fix("localhost:5000")
        'https://localhost:5000'
        >>> url_fix("http://localhost:5000/")
        'http://localhost:5000'
        >>> url_fix(None) is None
        True"""
   if (not url):
      return None
   if ("://" not in url):
      url = "https://" + url
   return url.rstrip("/")


## Bootstrap ##

if (__name__ == "__main__"):
   oc.exit(main())

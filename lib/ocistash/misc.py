# Subcommands not exciting enough for their own module.

import argparse
import json
import sys

from . import core as oc
from . import image as im
from . import portable as pt
from . import registry as rg
from . import repository as rp
from . import version


## argparse “actions” ##

class Action_Exit(argparse.Action):

   def __init__(self, *args, **kwargs):
      super().__init__(nargs=0, *args, **kwargs)

class Version(Action_Exit):

   def __call__(self, *args, **kwargs):
      print(version.VERSION)
      sys.exit(0)


## Plain functions ##

# Arguments: command line arguments Namespace and the Repository. Return the
# exit status; the caller passes it to sys.exit().

def create(cli, repo):
   ref = im.Reference(cli.image_ref)
   if (cli.name is not None and not cli.force
       and repo.container_id(cli.name) is not None):
      oc.ERROR("container name already exists: %s" % cli.name)
      return 1
   cid = im.Image(repo, ref.repo, ref.tag).container_create()
   if (cid is None):
      return 1
   print(cid)
   if (cli.name is not None):
      if (not repo.container_name_set(cid, cli.name) and not cli.force):
         return 1
   return 0

def export(cli, repo):
   cid = repo.container_id(cli.container)
   if (cid is None):
      oc.ERROR("invalid container id or name: %s" % cli.container)
      return 1
   if (not pt.Portable(repo).export_container(cid, cli.output)):
      oc.ERROR("exporting failed")
      return 1
   return 0

def images(cli, repo):
   print("REPOSITORY")
   for (repo_name, tag) in repo.image_repos():
      prot = "P" if repo.tag_protected_p(repo_name, tag) else "."
      tagdir = repo.tag_select(repo_name, tag)
      if (cli.platform):
         print("%-18.18s %s %s:%s"
               % (repo.image_platform(), prot, repo_name, tag))
      else:
         print("%s:%s    %s" % (repo_name, tag, prot))
      if (cli.long):
         print(" %s" % tagdir)
         for (path, size) in repo.layers_list(repo_name, tag):
            size_mib = size // 2**20
            if (size_mib == 0 and size > 0):
               size_mib = 1
            print("    %s (%d MB)" % (path.name, size_mib))
   return 0

def import_(cli, repo):
   ref = im.Reference(cli.image_ref)
   oc.INFO("importing:    %s" % cli.path)
   oc.INFO("destination:  %s" % ref)
   if (not pt.Portable(repo).import_tar(cli.path, ref.repo, ref.tag,
                                        cli.platform)):
      oc.ERROR("importing failed")
      return 1
   return 0

def inspect(cli, repo):
   cid = repo.container_id(cli.target)
   if (cid is not None):
      cdir = repo.container_select(cid)
      if (cli.print_dir):
         print(cdir // rp.CONTAINER_ROOT)
         return 0
      config = (cdir // rp.CONTAINER_JSON).json_from_file("container config",
                                                          fail_ok=True)
      if (config is None):
         oc.ERROR("container metadata not found: %s" % cid)
         return 1
      print(json.dumps(config, indent=2))
      return 0
   ref = im.Reference(cli.target)
   tagdir = repo.tag_select(ref.repo, ref.tag)
   if (tagdir is None):
      oc.ERROR("image not found: %s" % ref)
      return 1
   if (cli.print_dir):
      print(tagdir)
      return 0
   (config, _) = repo.image_attributes()
   if (config is None):
      oc.ERROR("image metadata not found: %s" % ref)
      return 1
   print(json.dumps(config, indent=2))
   return 0

def load(cli, repo):
   loaded = pt.Portable(repo).load(cli.input, cli.repo)
   if (len(loaded) == 0):
      oc.ERROR("load failed")
      return 1
   for repotag in loaded:
      print(repotag)
   return 0

def manifest_inspect(cli, repo):
   ref = im.Reference(cli.image_ref)
   (_, registry_url, _, remoterepo) = rg.parse_reference(ref.repo, repo.config)
   http = rg.HTTP(repo.config, registry_url)
   (_, manifest) = http.manifest_get(remoterepo, ref.tag, cli.platform)
   http.close()
   if (manifest is None):
      oc.ERROR("manifest not found: %s" % ref)
      return 1
   print(json.dumps(manifest, indent=2))
   return 0

def name(cli, repo):
   cid = repo.container_id(cli.container)
   if (cid is None):
      oc.ERROR("container not found: %s" % cli.container)
      return 1
   return 0 if repo.container_name_set(cid, cli.name) else 1

def protect(cli, repo):
   return protect_set(cli, repo, True)

def protect_set(cli, repo, protect_p):
   cid = repo.container_id(cli.target)
   if (cid is not None):
      if (protect_p):
         ok = repo.container_protect(cid)
      else:
         ok = repo.container_unprotect(cid)
   else:
      ref = im.Reference(cli.target)
      if (protect_p):
         ok = repo.tag_protect(ref.repo, ref.tag)
      else:
         ok = repo.tag_unprotect(ref.repo, ref.tag)
   if (not ok):
      oc.ERROR("container or image not found: %s" % cli.target)
      return 1
   return 0

def ps(cli, repo):
   print("%-36s %s %s %-20s %s" % ("CONTAINER ID", "P", "M", "NAMES", "IMAGE"))
   for (cid, image, names) in repo.containers_list():
      prot = "P" if repo.container_protected_p(cid) else "."
      mode = { 0: "R", 1: "W", 2: "N" }[repo.container_writable(cid)]
      line = "%-36s %s %s %-20s %s" % (cid, prot, mode, names or "-",
                                       image or "-")
      if (cli.size):
         line += " %d MB" % repo.container_size(cid)
      print(line)
   return 0

def rename(cli, repo):
   cid = repo.container_id(cli.name)
   if (cid is None):
      oc.ERROR("container does not exist: %s" % cli.name)
      return 1
   if (repo.container_id(cli.new_name) is not None):
      oc.ERROR("new name already exists: %s" % cli.new_name)
      return 1
   old_alias_p = (cli.name != cid)
   if (old_alias_p):
      repo.container_name_del(cli.name)
   if (not repo.container_name_set(cid, cli.new_name)):
      oc.ERROR("can’t set new name: %s" % cli.new_name)
      if (old_alias_p):
         repo.container_name_set(cid, cli.name)
      return 1
   return 0

def rm(cli, repo):
   status = 0
   for target in cli.containers:
      cid = repo.container_id(target)
      if (cid is None):
         oc.ERROR("container id or name not found: %s" % target)
         status = 1
         continue
      oc.INFO("deleting container: %s" % cid)
      if (not repo.container_remove(cid, cli.force)):
         oc.ERROR("can’t remove container: %s" % cid)
         status = 1
   return status

def rmi(cli, repo):
   ref = im.Reference(cli.image_ref)
   oc.INFO("deleting image: %s:%s" % (ref.repo, ref.tag))
   if (not repo.image_remove(ref.repo, ref.tag, cli.force)):
      oc.ERROR("can’t remove image: %s" % ref)
      return 1
   return 0

def rmname(cli, repo):
   return 0 if repo.container_name_del(cli.name) else 1

def save(cli, repo):
   images = list()
   for image_ref in cli.image_refs:
      ref = im.Reference(image_ref)
      images.append((ref.repo, ref.tag))
   if (not pt.Portable(repo).save(images, cli.output)):
      oc.ERROR("save failed")
      return 1
   return 0

def unprotect(cli, repo):
   return protect_set(cli, repo, False)

def verify(cli, repo):
   ref = im.Reference(cli.image_ref)
   oc.INFO("verifying: %s:%s" % (ref.repo, ref.tag))
   if (repo.tag_select(ref.repo, ref.tag) is None):
      oc.ERROR("image not found: %s" % ref)
      return 1
   if (not repo.image_verify()):
      oc.ERROR("image verification failed: %s" % ref)
      return 1
   oc.INFO("image OK")
   return 0

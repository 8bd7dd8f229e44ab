from . import core as oc
from . import image as im
from . import registry as rg


## Main ##

def main(cli, repo):
   ref = im.Reference(cli.image_ref)
   platform = cli.platform
   if (platform is None):
      platform = oc.platform_str(*oc.platform_host())
   oc.INFO("pulling image:    %s" % ref)
   oc.INFO("requesting arch:  %s" % platform)
   oc.INFO("pull policy:      %s" % cli.pull.value)
   puller = Image_Puller(repo)
   digests = puller.pull(ref.repo, ref.tag, platform, cli.pull)
   puller.done()
   if (len(digests) == 0):
      oc.ERROR("no files downloaded: %s" % ref)
      return 1
   oc.INFO("done")
   return 0


## Classes ##

class Image_Puller:
   """Pulls images from a registry into the local repository. One object per
      invocation; the HTTP client (and so its token cache) is created when
      the registry is known, i.e. at pull() time, unless one is given."""

   __slots__ = ("registry",
                "repo")

   def __init__(self, repo, registry=None):
      self.repo = repo
      self.registry = registry

   def done(self):
      if (self.registry is not None):
         self.registry.close()

   def layer_fetch(self, remoterepo, digest, policy=oc.Pull_Policy.MISSING):
      """Make blob digest available in the store and link it into the current
         tag, downloading it from remoterepo if policy says so. A cached blob
         that doesn’t verify is deleted. Downloads land in a “part_” file
         that is renamed into the store only after it verifies, so a good
         cached blob is replaced only by another good one. Return True on
         success, False otherwise."""
      if (not digest or "/" in digest or digest.startswith(".")):
         oc.ERROR("invalid blob digest: %s" % digest)
         return False
      blob = self.repo.blob_path(digest)
      if (blob.is_file()):
         if (oc.digest_verify(blob, digest)):
            if (policy != oc.Pull_Policy.ALWAYS):
               oc.INFO("using cached layer: %s" % digest)
               return self.repo.layer_link_add(blob)
            oc.INFO("re-downloading layer (policy always): %s" % digest)
         else:
            blob.remove()
            oc.WARNING("cached layer invalid, deleted: %s" % digest)
            if (policy == oc.Pull_Policy.NEVER):
               oc.ERROR("can’t download layer with pull policy never: %s"
                        % digest)
               return False
      elif (policy == oc.Pull_Policy.NEVER):
         oc.ERROR("layer missing and pull policy is never: %s" % digest)
         return False
      part = self.repo.blob_part_path(digest)
      if (not self.registry.blob_to_file(remoterepo, digest, part,
                                         "layer %s" % digest[7:19])):
         part.remove()
         return False
      if (not oc.digest_verify(part, digest)):
         oc.ERROR("downloaded layer fails digest check: %s" % digest)
         part.remove()
         return False
      part.rename(blob)
      return self.repo.layer_link_add(blob)

   def layers_fetch_all(self, remoterepo, descriptors,
                        policy=oc.Pull_Policy.MISSING):
      """Fetch each blob in descriptors, in order; each is a manifest entry
         with the digest under “blobSum” (schema 1) or “digest”. Stop at the
         first failure. Return the list of digests fetched, or an empty list
         if any failed."""
      digests = list()
      for (i, desc) in enumerate(descriptors, start=1):
         digest = desc.get("blobSum") or desc.get("digest")
         oc.INFO("layer %d/%d: %s" % (i, len(descriptors), digest))
         if (not self.layer_fetch(remoterepo, digest, policy)):
            return []
         digests.append(digest)
      return digests

   def pull(self, imagerepo, tag, platform=None,
            policy=oc.Pull_Policy.MISSING):
      """Pull imagerepo:tag into the local repository, selecting platform
         (“os[/arch[/variant]]”, default the host’s) from image indexes.
         Return the list of blob digests now linked from the tag, oldest
         layer first and config last, or an empty list on failure."""
      (_, registry_url, _, remoterepo) = rg.parse_reference(imagerepo,
                                                            self.repo.config)
      if (self.registry is None):
         self.registry = rg.HTTP(self.repo.config, registry_url)
      if (platform is None):
         platform = oc.platform_str(*oc.platform_host())
      if (self.repo.tag_select(imagerepo, tag) is None):
         self.repo.repo_create(imagerepo)
      if (not self.registry.v2_p()):
         oc.ERROR("registry doesn’t support API v2: %s"
                  % self.registry.registry_url)
         return []
      return self.v2_pull(remoterepo, tag, platform, policy)

   def v2_pull(self, remoterepo, tag, platform, policy):
      (status, manifest) = self.registry.manifest_get(remoterepo, tag,
                                                      platform)
      if (status == 401):
         oc.ERROR("manifest not found or not authorized: %s:%s"
                  % (remoterepo, tag))
         return []
      if (status != 200 or not isinstance(manifest, dict)):
         oc.ERROR("can’t pull manifest: %s:%s (status %s)"
                  % (remoterepo, tag, status))
         return []
      if (not (self.repo.tag_create(tag) and self.repo.version_set("v2"))):
         oc.ERROR("can’t set up tag: %s" % tag)
         return []
      self.repo.json_save("manifest", manifest)
      if ("fsLayers" in manifest):
         # Schema 1 lists layers newest first.
         return self.layers_fetch_all(remoterepo,
                                      list(reversed(manifest["fsLayers"])),
                                      policy)
      if ("layers" in manifest):
         descs = list(manifest["layers"])
         if (manifest.get("config")):
            descs.append(manifest["config"])
         return self.layers_fetch_all(remoterepo, descs, policy)
      oc.ERROR("layers section missing in manifest")
      return []

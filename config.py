"""Example squashport configuration for a file server sharing its tree over NFS."""

from squashport import Settings


def configure() -> Settings:
    """Configuration entry point."""
    settings = Settings()

    # Live tree and where its image is published for clients
    settings.set_target("/var/db/repos/gentoo", "/srv/portage/gentoo.sqfs")
    settings.source = "fileserver:/srv/portage/gentoo.sqfs"

    # Build in a 2G tmpfs; xz squashes smaller than the gzip default
    settings.use_staging("tmpfs", None, "size=2G")
    settings.mksquashfs_opts = ["-comp", "xz", "-no-progress", "-noappend"]

    # Keep local overlays out of the published tree
    settings.add_rsync_opts("--exclude=/local/")

    # Give up on a hung mirror after an hour
    settings.timeout = 3600

    return settings

# SPDX-License-Identifier: LGPL-2.1-or-later

import datetime
import hashlib
import json
import logging
import os
from pathlib import Path

from ukiforge.archive import make_tar
from ukiforge.architecture import Architecture
from ukiforge.config import __version__
from ukiforge.log import complete_step
from ukiforge.manifest import ArtifactManifest
from ukiforge.util import hash_file, umask


def creation_time() -> str:
    if (epoch := os.getenv("SOURCE_DATE_EPOCH")) is not None:
        return datetime.datetime.fromtimestamp(int(epoch), tz=datetime.timezone.utc).isoformat()

    return datetime.datetime.now(tz=datetime.timezone.utc).isoformat()


def make_oci(layer: Path, dst: Path, *, architecture: Architecture, tag: str) -> None:
    """
    Lay out an OCI image with layer as its single, uncompressed layer. A docker style manifest.json is
    written as well so the result can be fed to docker load as is.
    """
    ca_store = dst / "blobs" / "sha256"
    with umask(~0o755):
        ca_store.mkdir(parents=True)

    layer_digest = hash_file(layer)
    layer.rename(ca_store / layer_digest)

    created = creation_time()

    oci_config = {
        "created": created,
        "architecture": architecture.to_oci(),
        # Name of the operating system which the image is built to run on as defined by
        # https://github.com/opencontainers/image-spec/blob/v1.0.2/config.md#properties.
        "os": "linux",
        "rootfs": {
            "type": "layers",
            "diff_ids": [f"sha256:{layer_digest}"],
        },
        "config": {},
        "history": [
            {
                "created": created,
                "comment": "Created by ukiforge",
            },
        ],
    }
    oci_config_blob = json.dumps(oci_config)
    oci_config_digest = hashlib.sha256(oci_config_blob.encode()).hexdigest()
    with umask(~0o644):
        (ca_store / oci_config_digest).write_text(oci_config_blob)

    oci_manifest = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "config": {
            "mediaType": "application/vnd.oci.image.config.v1+json",
            "digest": f"sha256:{oci_config_digest}",
            "size": (ca_store / oci_config_digest).stat().st_size,
        },
        "layers": [
            {
                "mediaType": "application/vnd.oci.image.layer.v1.tar",
                "digest": f"sha256:{layer_digest}",
                "size": (ca_store / layer_digest).stat().st_size,
            }
        ],
        "annotations": {
            "io.ukiforge.version": __version__,
            "org.opencontainers.image.ref.name": tag,
        },
    }
    oci_manifest_blob = json.dumps(oci_manifest)
    oci_manifest_digest = hashlib.sha256(oci_manifest_blob.encode()).hexdigest()
    with umask(~0o644):
        (ca_store / oci_manifest_digest).write_text(oci_manifest_blob)

        (dst / "index.json").write_text(
            json.dumps(
                {
                    "schemaVersion": 2,
                    "mediaType": "application/vnd.oci.image.index.v1+json",
                    "manifests": [
                        {
                            "mediaType": "application/vnd.oci.image.manifest.v1+json",
                            "digest": f"sha256:{oci_manifest_digest}",
                            "size": (ca_store / oci_manifest_digest).stat().st_size,
                            "annotations": {"io.containerd.image.name": tag},
                        }
                    ],
                }
            )
        )

        (dst / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))

        (dst / "manifest.json").write_text(
            json.dumps(
                [
                    {
                        "Config": f"blobs/sha256/{oci_config_digest}",
                        "RepoTags": [tag],
                        "Layers": [f"blobs/sha256/{layer_digest}"],
                    }
                ]
            )
        )


def package_tree(manifest: ArtifactManifest, output_dir: Path) -> Path:
    with complete_step(f"Copying artifacts to {output_dir}"):
        manifest.copy_to(output_dir)

    return output_dir


def package_container(
    manifest: ArtifactManifest,
    workspace: Path,
    output: Path,
    *,
    architecture: Architecture,
    tag: str,
) -> Path:
    with complete_step(f"Creating container image {output.name} tagged {tag}"):
        tree = workspace / "container-root"
        manifest.copy_to(tree)

        layer = workspace / "layer.tar"
        make_tar(tree, layer)

        image = workspace / "oci"
        make_oci(layer, image, architecture=architecture, tag=tag)

        if output.exists():
            logging.warning(f"{output} already exists, overwriting it")
            output.unlink()

        try:
            make_tar(image, output)
        except BaseException:
            output.unlink(missing_ok=True)
            raise

    return output

"""
External Resource Provisioner - clones templates into owned objects.

Infrastructure templates are cloned into per-machine infrastructure
objects and the control plane's inline bootstrap configuration becomes a
bootstrap config object. Both are written with owner references pointing
back at the control plane so the store can garbage collect them.
"""

import copy
import logging
import random
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

from errors import NotFoundError
from models import (
    CLUSTER_API_VERSION,
    CLUSTER_NAME_LABEL,
    ClusterContext,
    ControlPlaneRecord,
    ObjectReference,
    OwnerReference,
)

logger = logging.getLogger(__name__)

TEMPLATE_CLONED_FROM_NAME_ANNOTATION = "cluster.x-k8s.io/cloned-from-name"
TEMPLATE_CLONED_FROM_GROUP_KIND_ANNOTATION = "cluster.x-k8s.io/cloned-from-groupkind"

# Same alphabet and limits as the API server's generateName
NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
NAME_SUFFIX_LENGTH = 5
MAX_NAME_LENGTH = 63


def generate_name(prefix: str, rng: Optional[random.Random] = None) -> str:
    """Return ``prefix`` followed by a random suffix, within the name limit."""
    rng = rng or random
    max_prefix = MAX_NAME_LENGTH - NAME_SUFFIX_LENGTH
    if len(prefix) > max_prefix:
        prefix = prefix[:max_prefix]
    suffix = "".join(rng.choice(NAME_SUFFIX_ALPHABET) for _ in range(NAME_SUFFIX_LENGTH))
    return f"{prefix}{suffix}"


def ensure_owner_ref(
    refs: List[Dict[str, Any]], owner: OwnerReference
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Add or update ``owner`` in a list of owner reference dicts.

    Returns:
        Tuple of (new list, changed).
    """
    updated = []
    found = False
    changed = False
    for data in refs:
        existing = OwnerReference.from_dict(data)
        if existing.refers_to(owner):
            found = True
            if existing != owner:
                changed = True
            updated.append(asdict(owner))
        else:
            updated.append(data)
    if not found:
        updated.append(asdict(owner))
        changed = True
    return updated, changed


class ExternalResourceProvisioner:
    """Creates and adopts the external objects a machine depends on."""

    def __init__(
        self,
        db: Any,
        rng: Optional[random.Random] = None,
        bootstrap_config_kind: str = "CharmedK8sConfig",
        bootstrap_config_api_version: str = "bootstrap.cluster.x-k8s.io/v1beta1",
    ):
        self.db = db
        self.rng = rng or random.Random()
        self.bootstrap_config_kind = bootstrap_config_kind
        self.bootstrap_config_api_version = bootstrap_config_api_version

    async def get(self, ref: ObjectReference, namespace: str) -> Dict[str, Any]:
        """
        Fetch an external object by reference.

        Raises:
            NotFoundError: If the object does not exist.
        """
        obj = await self.db.get_external_object(ref, namespace)
        if obj is None:
            raise NotFoundError(
                f"{ref.kind} {ref.namespace or namespace}/{ref.name} not found"
            )
        return obj

    async def clone_template(
        self,
        template_ref: ObjectReference,
        namespace: str,
        owner_ref: OwnerReference,
        cluster_name: str,
    ) -> ObjectReference:
        """
        Clone a template into a new object owned by ``owner_ref``.

        The clone takes the template's ``spec.template.spec``, and its
        ``spec.template.metadata`` labels and annotations. Its kind is the
        template kind without the ``Template`` suffix.

        Args:
            template_ref: Reference to the template.
            namespace: Namespace to create the clone in.
            owner_ref: Owner of the clone.
            cluster_name: Cluster the clone belongs to.

        Returns:
            A reference to the created object.
        """
        if template_ref is None:
            raise NotFoundError("No infrastructure template referenced")
        template = await self.get(template_ref, namespace)
        template_spec = template.get("spec", {}).get("template", {})
        metadata = template_spec.get("metadata", {})

        labels = dict(metadata.get("labels", {}))
        labels[CLUSTER_NAME_LABEL] = cluster_name

        annotations = dict(metadata.get("annotations", {}))
        group = template["api_version"].split("/")[0]
        annotations[TEMPLATE_CLONED_FROM_NAME_ANNOTATION] = template["name"]
        annotations[TEMPLATE_CLONED_FROM_GROUP_KIND_ANNOTATION] = (
            f"{template['kind']}.{group}"
        )

        kind = template["kind"]
        if kind.endswith("Template"):
            kind = kind[: -len("Template")]

        created = await self.db.create_external_object(
            {
                "api_version": template["api_version"],
                "kind": kind,
                "namespace": namespace,
                "name": generate_name(f"{template['name']}-", self.rng),
                "labels": labels,
                "annotations": annotations,
                "owner_references": [asdict(owner_ref)],
                "spec": copy.deepcopy(template_spec.get("spec", {})),
            }
        )
        logger.info(
            f"Cloned {template['kind']} {template['name']} into "
            f"{kind} {namespace}/{created['name']}"
        )
        return ObjectReference(
            api_version=created["api_version"],
            kind=created["kind"],
            name=created["name"],
            namespace=created["namespace"],
            uid=created["uid"],
        )

    async def create_bootstrap_config(
        self, spec: Dict[str, Any], owner: ControlPlaneRecord
    ) -> ObjectReference:
        """
        Create a bootstrap config from ``spec``, owned by the control plane.

        The owner reference blocks deletion of the owner until the config
        is gone.
        """
        logger.info(f"Generating bootstrap config for {owner.namespace}/{owner.name}")
        created = await self.db.create_external_object(
            {
                "api_version": self.bootstrap_config_api_version,
                "kind": self.bootstrap_config_kind,
                "namespace": owner.namespace,
                "name": generate_name(f"{owner.name}-", self.rng),
                "owner_references": [
                    asdict(owner.owner_reference(block_owner_deletion=True))
                ],
                "spec": copy.deepcopy(spec),
            }
        )
        return ObjectReference(
            api_version=created["api_version"],
            kind=created["kind"],
            name=created["name"],
            namespace=created["namespace"],
            uid=created["uid"],
        )

    async def reconcile_external_reference(
        self, ref: ObjectReference, cluster: ClusterContext
    ) -> None:
        """Ensure the referenced object is owned by the cluster."""
        obj = await self.get(ref, cluster.namespace)
        owner = OwnerReference(
            api_version=CLUSTER_API_VERSION,
            kind="Cluster",
            name=cluster.name,
            uid=cluster.uid,
        )
        refs, changed = ensure_owner_ref(obj.get("owner_references", []), owner)
        if not changed:
            return
        obj["owner_references"] = refs
        await self.db.update_external_object(obj)
        logger.info(f"Set Cluster {cluster.name} as owner of {ref.kind} {ref.name}")

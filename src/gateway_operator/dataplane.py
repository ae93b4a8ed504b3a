"""DataPlane reconciler.

Each pass re-derives every desired child from the DataPlane spec and diffs it
against the live children found by label, so drift is corrected no matter
where it came from.
"""

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from . import certificates
from . import conditions as cond
from . import constants as C
from . import resources
from .config import OperatorConfig
from .errors import DependencyNotReadyError, SpecValidationError
from .extension import get_extension_output
from .reconcile import DONE, ReconcileResult, diff_fields, is_subset, oldest_first, requeue

logger = logging.getLogger(__name__)

DEPLOYMENT_SPEC_FIELDS = ["replicas", "template", "strategy", "revisionHistoryLimit", "progressDeadlineSeconds"]
SERVICE_SPEC_FIELDS = ["type", "selector", "ports", "externalTrafficPolicy", "publishNotReadyAddresses"]
HPA_SPEC_FIELDS = ["scaleTargetRef", "minReplicas", "maxReplicas", "metrics", "behavior"]


class DataPlaneReconciler:
    """Converges the children of DataPlane resources."""

    def __init__(self, store, config: Optional[OperatorConfig] = None):
        self.store = store
        self.config = config or OperatorConfig()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def reconcile(self, dataplane: Dict[str, Any]) -> ReconcileResult:
        """Run one convergence pass for a DataPlane."""
        meta = dataplane["metadata"]
        name, namespace = meta["name"], meta["namespace"]
        logger.info(f"Reconciling DataPlane {namespace}/{name}")

        if not dataplane.get("status"):
            dataplane["status"] = {}
        status = dataplane["status"]
        if not status.get("selector"):
            status["selector"] = str(uuid.uuid4())
            cond.set_condition(dataplane, cond.READY, cond.FALSE, cond.REASON_WAITING_TO_BECOME_READY,
                               "DataPlane is being provisioned")
            self._write_status(dataplane)

        try:
            extension = self._resolve_extensions(dataplane)
            cert_secret = self._ensure_cluster_certificate(dataplane)
            desired = resources.synthesize(
                dataplane,
                cert_secret["metadata"]["name"],
                image=self.config.dataplane_image,
                extension=extension,
            )
        except DependencyNotReadyError as e:
            logger.info(f"DataPlane {namespace}/{name} waiting for dependencies: {e}")
            cond.set_condition(dataplane, cond.READY, cond.FALSE, cond.REASON_WAITING_TO_BECOME_READY, str(e))
            self._write_status(dataplane)
            return requeue(self.config.requeue_waiting_seconds, str(e))
        except SpecValidationError as e:
            logger.warning(f"DataPlane {namespace}/{name} has an invalid spec: {e}")
            cond.set_condition(dataplane, cond.READY, cond.FALSE, cond.REASON_VALIDATION_FAILED, str(e))
            self._write_status(dataplane)
            return requeue(self.config.requeue_slow_seconds, str(e))

        deployment = self._ensure_deployment(dataplane, desired.deployment)
        hpa = self._ensure_hpa(dataplane, deployment)
        pdb = self._ensure_pdb(dataplane, desired.pdb)
        ingress = self._ensure_service(dataplane, desired.service(C.SERVICE_TYPE_INGRESS))
        self._ensure_service(dataplane, desired.service(C.SERVICE_TYPE_ADMIN))

        self._update_status(dataplane, deployment, ingress, pdb)
        ready, message = self._readiness(dataplane, deployment, hpa, ingress)
        if not ready:
            cond.set_condition(dataplane, cond.READY, cond.FALSE, cond.REASON_WAITING_TO_BECOME_READY, message)
            self._write_status(dataplane)
            return requeue(self.config.requeue_waiting_seconds, message)

        cond.set_condition(dataplane, cond.READY, cond.TRUE, cond.REASON_READY, "")
        self._write_status(dataplane)
        logger.info(f"DataPlane {namespace}/{name} is ready")
        return DONE

    def delete(self, dataplane: Dict[str, Any]) -> ReconcileResult:
        """Handle DataPlane deletion.

        Children are cleaned up automatically via ownerReferences.
        """
        meta = dataplane["metadata"]
        logger.info(f"DataPlane {meta['namespace']}/{meta['name']} deleted - resources will be garbage collected")
        return DONE

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def _resolve_extensions(self, dataplane: Dict[str, Any]) -> Optional[resources.KonnectExtensionOutput]:
        namespace = dataplane["metadata"]["namespace"]
        refs = (dataplane.get("spec") or {}).get("extensions") or []
        output = None
        for ref in refs:
            kind = ref.get("kind")
            group = ref.get("group", C.KONNECT_GROUP)
            if kind != C.KONNECT_EXTENSION_KIND or group != C.KONNECT_GROUP:
                raise SpecValidationError(f"unsupported extension {group}/{kind}")
            if output is not None:
                raise SpecValidationError("only one KonnectExtension may be attached to a DataPlane")

            ext_ns = ref.get("namespace") or namespace
            ref_name = f"{C.KONNECT_EXTENSION_KIND} {ext_ns}/{ref['name']}"
            extension = self.store.get(C.KONNECT_EXTENSION_KIND, ext_ns, ref["name"])
            if extension is None:
                raise DependencyNotReadyError(f"{ref_name} not found", [ref_name])
            if extension["metadata"].get("deletionTimestamp"):
                raise DependencyNotReadyError(f"{ref_name} is being deleted", [ref_name])
            self.store.add_finalizer(extension, C.FINALIZER_EXTENSION_IN_USE)
            if not cond.is_ready(extension):
                raise DependencyNotReadyError(f"konnect extension is not ready: {ref_name}", [ref_name])
            output = get_extension_output(extension)
            if output is None:
                raise DependencyNotReadyError(f"konnect extension is not ready: {ref_name} status is incomplete",
                                              [ref_name])
        return output

    def _ensure_cluster_certificate(self, dataplane: Dict[str, Any]) -> Dict[str, Any]:
        meta = dataplane["metadata"]
        labels = resources.build_labels(meta["name"], {C.LABEL_CERT_PURPOSE: C.CERT_PURPOSE_CLUSTER})
        secret = self._reduce("Secret", meta["namespace"], self.store.list("Secret", meta["namespace"], labels))
        if secret is not None:
            cert_pem, _ = certificates.decode_tls_secret(secret)
            if cert_pem and not certificates.is_expired(cert_pem):
                return secret
            logger.info(f"Cluster certificate {meta['namespace']}/{secret['metadata']['name']} is invalid, rotating")
            self.store.delete("Secret", meta["namespace"], secret["metadata"]["name"])

        cert_pem, key_pem = certificates.generate_self_signed(f"{meta['name']}.{meta['namespace']}.svc")
        return self.store.create(resources.build_cluster_cert_secret(dataplane, cert_pem, key_pem))

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def _reduce(self, kind: str, namespace: str, items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Keep the oldest of several equivalent children and delete the rest."""
        ordered = oldest_first(items)
        for extra in ordered[1:]:
            logger.info(f"Reducing duplicate {kind} {namespace}/{extra['metadata']['name']}")
            self.store.delete(kind, namespace, extra["metadata"]["name"])
        return ordered[0] if ordered else None

    def _ensure_deployment(self, dataplane: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
        namespace = dataplane["metadata"]["namespace"]
        labels = desired["metadata"]["labels"]
        live = self._reduce("Deployment", namespace, self.store.list("Deployment", namespace, labels))
        if live is None:
            return self.store.create(desired)

        if not is_subset(desired["spec"]["selector"], live["spec"].get("selector")):
            logger.info(f"Deployment {namespace}/{live['metadata']['name']} selector changed, recreating")
            self.store.delete("Deployment", namespace, live["metadata"]["name"])
            return self.store.create(desired)

        scaling = resources.get_horizontal_scaling(dataplane.get("spec") or {})
        if scaling:
            # the autoscaler owns the replica count, only enforce its minimum
            live_replicas = live["spec"].get("replicas") or 0
            desired["spec"]["replicas"] = max(live_replicas, int(scaling.get("minReplicas") or 1))

        changes = diff_fields(desired["spec"], live["spec"], DEPLOYMENT_SPEC_FIELDS)
        labels_drifted = not is_subset(labels, live["metadata"].get("labels"))
        if not changes and not labels_drifted:
            return live

        logger.info(f"Deployment {namespace}/{live['metadata']['name']} drifted in {sorted(changes) or ['labels']}")
        updated = copy.deepcopy(live)
        updated["spec"].update(changes)
        updated["metadata"]["labels"] = {**(live["metadata"].get("labels") or {}), **labels}
        return self.store.replace(updated)

    def _ensure_hpa(self, dataplane: Dict[str, Any], deployment: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        meta = dataplane["metadata"]
        namespace = meta["namespace"]
        desired = resources.build_hpa(dataplane, deployment["metadata"]["name"])
        items = self.store.list("HorizontalPodAutoscaler", namespace, resources.build_labels(meta["name"]))

        if desired is None:
            for item in items:
                logger.info(f"Horizontal scaling removed, deleting HorizontalPodAutoscaler "
                            f"{namespace}/{item['metadata']['name']}")
                self.store.delete("HorizontalPodAutoscaler", namespace, item["metadata"]["name"])
            return None

        live = self._reduce("HorizontalPodAutoscaler", namespace, items)
        if live is None:
            return self.store.create(desired)

        changes = diff_fields(desired["spec"], live["spec"], HPA_SPEC_FIELDS)
        if not changes:
            return live
        updated = copy.deepcopy(live)
        updated["spec"].update(changes)
        return self.store.replace(updated)

    def _ensure_pdb(self, dataplane: Dict[str, Any], desired: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        meta = dataplane["metadata"]
        namespace = meta["namespace"]
        items = self.store.list("PodDisruptionBudget", namespace, resources.build_labels(meta["name"]))

        if desired is None:
            for item in items:
                self.store.delete("PodDisruptionBudget", namespace, item["metadata"]["name"])
            return None

        live = self._reduce("PodDisruptionBudget", namespace, items)
        if live is None:
            return self.store.create(desired)
        if is_subset(desired["spec"], live["spec"]) and set(live["spec"]) <= set(desired["spec"]):
            return live

        # minAvailable and maxUnavailable are exclusive, so the spec is swapped whole
        updated = copy.deepcopy(live)
        updated["spec"] = desired["spec"]
        return self.store.replace(updated)

    def _ensure_service(self, dataplane: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
        namespace = dataplane["metadata"]["namespace"]
        labels = desired["metadata"]["labels"]
        selector = {k: labels[k] for k in (C.LABEL_APP, C.LABEL_MANAGED_BY, C.LABEL_SERVICE_TYPE)}
        items = self.store.list("Service", namespace, selector)

        wanted_name = desired["metadata"].get("name")
        prefix = desired["metadata"].get("generateName", "")
        # a renamed service is replaced, never renamed in place
        kept = []
        for svc in items:
            live_name = svc["metadata"]["name"]
            if live_name == wanted_name or (not wanted_name and live_name.startswith(prefix)):
                kept.append(svc)
                continue
            logger.info(f"Service {namespace}/{live_name} no longer matches its DataPlane name, deleting")
            self.store.delete("Service", namespace, live_name)
        items = kept

        live = self._reduce("Service", namespace, items)
        if live is None:
            return self.store.create(desired)

        desired_annotations = {
            k: v for k, v in (desired["metadata"].get("annotations") or {}).items()
            if k != C.ANNOTATION_LAST_APPLIED
        }
        live_annotations = live["metadata"].get("annotations") or {}
        annotations = resources.merge_annotations(live_annotations, desired_annotations)
        changes = diff_fields(desired["spec"], live["spec"], SERVICE_SPEC_FIELDS)
        labels_drifted = not is_subset(labels, live["metadata"].get("labels"))
        if not changes and not labels_drifted and annotations == live_annotations:
            return live

        updated = copy.deepcopy(live)
        # clusterIP and other allocated fields are carried over from the live object
        updated["spec"].update(changes)
        updated["metadata"]["annotations"] = annotations
        updated["metadata"]["labels"] = {**(live["metadata"].get("labels") or {}), **labels}
        return self.store.replace(updated)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _update_status(
        self,
        dataplane: Dict[str, Any],
        deployment: Dict[str, Any],
        ingress: Dict[str, Any],
        pdb: Optional[Dict[str, Any]],
    ) -> None:
        status = dataplane["status"]
        dep_status = deployment.get("status") or {}
        replicas = dep_status.get("replicas")
        if replicas is None:
            replicas = deployment["spec"].get("replicas", 0)
        ready_replicas = dep_status.get("readyReplicas") or 0

        status["service"] = ingress["metadata"]["name"]
        status["addresses"] = service_addresses(ingress)
        status["replicas"] = replicas
        status["readyReplicas"] = ready_replicas

        if pdb is not None:
            # the budget tracks the pods that are actually live right now
            status["podDisruptionBudget"] = resources.pdb_budget(
                ready_replicas,
                ready_replicas,
                pdb["spec"].get("minAvailable"),
                pdb["spec"].get("maxUnavailable"),
            )
        else:
            status["podDisruptionBudget"] = None

    def _readiness(
        self,
        dataplane: Dict[str, Any],
        deployment: Dict[str, Any],
        hpa: Optional[Dict[str, Any]],
        ingress: Optional[Dict[str, Any]],
    ) -> Tuple[bool, str]:
        dep_name = deployment["metadata"]["name"]
        dep_status = deployment.get("status") or {}
        generation = deployment["metadata"].get("generation")
        if generation is not None and dep_status.get("observedGeneration", 0) < generation:
            return False, f"Deployment {dep_name} rollout not yet observed"

        wanted = deployment["spec"].get("replicas", 1)
        ready = dep_status.get("readyReplicas") or 0
        if ready < wanted:
            return False, f"Deployment {dep_name} has {ready}/{wanted} ready replicas"

        if resources.get_horizontal_scaling(dataplane.get("spec") or {}) and hpa is None:
            return False, "HorizontalPodAutoscaler not yet created"
        if hpa is not None and wanted < (hpa["spec"].get("minReplicas") or 1):
            return False, f"Deployment {dep_name} is below the autoscaler minimum"
        if ingress is None:
            return False, "ingress Service not yet created"
        return True, ""

    def _write_status(self, dataplane: Dict[str, Any]) -> None:
        meta = dataplane["metadata"]
        self.store.patch_status(C.DATAPLANE_KIND, meta["namespace"], meta["name"], dataplane["status"])


def service_addresses(service: Dict[str, Any]) -> List[Dict[str, str]]:
    """Addresses a Service is reachable at, load balancer ones first."""
    addresses = []
    for ingress in ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []:
        if ingress.get("ip"):
            addresses.append({"type": "IPAddress", "value": ingress["ip"], "sourceType": "PublicLoadBalancer"})
        if ingress.get("hostname"):
            addresses.append({"type": "Hostname", "value": ingress["hostname"], "sourceType": "PublicLoadBalancer"})

    spec = service.get("spec") or {}
    cluster_ips = spec.get("clusterIPs") or ([spec["clusterIP"]] if spec.get("clusterIP") else [])
    for ip in cluster_ips:
        if ip and ip != "None":
            addresses.append({"type": "IPAddress", "value": ip, "sourceType": "PrivateIP"})
    return addresses

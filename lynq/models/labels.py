"""Well-known label, annotation and finalizer keys written by Lynq.

A managed object is either actively tracked (``node`` / ``node-namespace``
labels or an owner reference) or orphaned (``orphaned`` label plus the
``orphaned-at`` / ``orphaned-reason`` annotations), never both.
"""

from __future__ import annotations

API_GROUP = "operator.lynq.sh"
API_VERSION = "v1"
GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

KIND_FORM = "LynqForm"
KIND_NODE = "LynqNode"
KIND_HUB = "LynqHub"

PLURALS = {
    KIND_FORM: "lynqforms",
    KIND_NODE: "lynqnodes",
    KIND_HUB: "lynqhubs",
}

NODE_FINALIZER = "lynqnode.operator.lynq.sh/finalizer"

# Tracking labels (managed objects)
LABEL_NODE = "lynq.sh/node"
LABEL_NODE_NAMESPACE = "lynq.sh/node-namespace"
LABEL_ORPHANED = "lynq.sh/orphaned"

# Annotations on managed objects
ANNOTATION_ORPHANED_AT = "lynq.sh/orphaned-at"
ANNOTATION_ORPHANED_REASON = "lynq.sh/orphaned-reason"
ANNOTATION_CREATED_ONCE = "lynq.sh/created-once"
ANNOTATION_DELETION_POLICY = "lynq.sh/deletion-policy"

# Labels / annotations on LynqNode objects
LABEL_HUB = "lynq.sh/hub"
ANNOTATION_ACTIVATE = "lynq.sh/activate"
ANNOTATION_HOST_OR_URL = "lynq.sh/hostOrUrl"
ANNOTATION_EXTRA = "lynq.sh/extra"
ANNOTATION_TEMPLATE_GENERATION = "lynq.sh/template-generation"
ANNOTATION_TEMPLATE_UPDATED_AT = "lynq.sh/template-updated-at"

ORPHAN_REASON_REMOVED = "RemovedFromTemplate"
ORPHAN_REASON_NODE_DELETED = "LynqNodeDeleted"

TRACKING_LABELS = (LABEL_NODE, LABEL_NODE_NAMESPACE)
ORPHAN_ANNOTATIONS = (ANNOTATION_ORPHANED_AT, ANNOTATION_ORPHANED_REASON)

"""
certapprover - Policy-driven approval of cert-manager CertificateRequests.

certapprover watches CertificateRequests and approves each one that an
Open Policy Agent policy allows, based on the request and on the metadata of
the namespace it was created in. It provides:
- A level-triggered, idempotent reconciliation of every request
- Re-evaluation of pending requests when their namespace changes
- Default-closed decisions: only an explicit allow approves

Example usage:
    $ certapprover run policy/approval.rego
    $ certapprover check policy/approval.rego
    $ certapprover evaluate policy/approval.rego --fixtures cluster.yaml
"""

__version__ = "0.1.0"
__author__ = "certapprover Contributors"

__all__ = [
    "__version__",
    "__author__",
]

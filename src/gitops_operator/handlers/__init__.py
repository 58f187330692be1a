"""
Handlers package - Contains all Kopf event handlers.

This package organizes handlers by resource type:
- argocd.py: ArgoCD instance lifecycle (create, update, delete, resync)
- namespace.py: Namespace watch fast-path cleanup
"""

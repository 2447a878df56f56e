"""Deployment and environment status backend for spaces on OpenShift."""

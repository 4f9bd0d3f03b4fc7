"""Kubelet connection, raw metric grouping and metric specs."""

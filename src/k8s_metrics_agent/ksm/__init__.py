"""kube-state-metrics discovery, grouping and metric specs."""

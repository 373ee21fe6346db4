"""Container Workload Reconciler (CWR).

Single-host controller that keeps container workloads converging toward a
declared desired state:
 - pins the image by content digest and pulls it only when missing
 - creates one container (run spec) or one per service (compose spec)
 - watches every container and starts it according to policy
 - remembers run-once workloads across process restarts

The engine calls live in docker_ops; everything else is engine agnostic.
"""

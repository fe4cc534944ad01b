from stackfold.provider.k8s.workload import WorkloadProvider

__all__ = ["WorkloadProvider"]

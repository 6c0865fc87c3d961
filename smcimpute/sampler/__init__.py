from smcimpute.sampler.rejection import DrawContext, RejectionResult, RejectionSampler

__all__ = ["DrawContext", "RejectionResult", "RejectionSampler"]

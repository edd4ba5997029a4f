"""
pep_consensus: bucket peptide features across LC-MS runs and build a consensus feature set.
"""

__version__ = "0.1.0"

from .bucketing import Bucket, BucketingEngine, BucketingResult, bucket_features
from .config import Manifest, PipelineConfig, RunSpec, load_manifest
from .consensus import (
    ConsensusConfig,
    ConsensusFeature,
    ConsensusReducer,
    ConsensusResult,
    IntensityMode,
    reduce_buckets,
    register_intensity_mode,
)
from .errors import (
    ConsensusError,
    ConsensusExecutionError,
    InputReadFailure,
    InvalidConfiguration,
    OutputWriteFailure,
)
from .feature_set import write_consensus_feature_set
from .features import FeatureRecord, FeatureSelector, InMemoryFeatureSource, TableFeatureSource
from .peptide_array import PeptideArray, read_peptide_array, write_peptide_array
from .pipeline import PipelineResult, build_peptide_array, run_consensus

__all__ = [
    "Bucket",
    "BucketingEngine",
    "BucketingResult",
    "bucket_features",
    "ConsensusConfig",
    "ConsensusFeature",
    "ConsensusReducer",
    "ConsensusResult",
    "IntensityMode",
    "reduce_buckets",
    "register_intensity_mode",
    "ConsensusError",
    "ConsensusExecutionError",
    "InputReadFailure",
    "InvalidConfiguration",
    "OutputWriteFailure",
    "FeatureRecord",
    "FeatureSelector",
    "InMemoryFeatureSource",
    "TableFeatureSource",
    "Manifest",
    "PipelineConfig",
    "RunSpec",
    "load_manifest",
    "PeptideArray",
    "read_peptide_array",
    "write_peptide_array",
    "write_consensus_feature_set",
    "PipelineResult",
    "build_peptide_array",
    "run_consensus",
    "__version__",
]

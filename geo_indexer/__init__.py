from .config import JobConfig
from .errors import ConfigurationError, JobCancelledError, JobFailedError, OutputExistsError
from .geometry import Rectangle
from .indexer import index, repartition
from .partitioner import GridPartitioner, IndexType
from .records import Data, End, decode_sentinel, encode_sentinel

__all__ = [
    "ConfigurationError",
    "Data",
    "End",
    "GridPartitioner",
    "IndexType",
    "JobCancelledError",
    "JobConfig",
    "JobFailedError",
    "OutputExistsError",
    "Rectangle",
    "decode_sentinel",
    "encode_sentinel",
    "index",
    "repartition",
]

"""Transfer measurements and results files."""

from blockswap_bench.stats.measurements import FetchOutcome, FetchRecord, ResultsWriter, TransferReport

__all__ = ["FetchOutcome", "FetchRecord", "ResultsWriter", "TransferReport"]

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total upload chunks staged")
chunk_bytes_received_total = Counter("chunk_bytes_received_total", "Total bytes staged as upload chunks")
chunk_receive_failures_total = Counter("chunk_receive_failures_total", "Total chunk writes that failed")
merges_total = Counter("merges_total", "Chunk merge attempts by outcome", ["outcome"])
direct_uploads_total = Counter("direct_uploads_total", "Total single-request uploads stored")
blob_store_failures_total = Counter("blob_store_failures_total", "Blob store calls that raised", ["operation"])
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")
scratch_entries_swept_total = Counter("scratch_entries_swept_total", "Stale scratch entries removed by the sweep")

blob_store_latency_seconds = Histogram(
    "blob_store_latency_seconds", "Blob store call latency in seconds", ["operation"]
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

"""
Streaming archival of Gmail threads into compressed tar files.
"""

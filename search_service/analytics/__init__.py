"""Search analytics.

The recorder buffers events on a bounded queue and writes them to a sink in
the background; reports are derived read-only views over sink contents.
"""

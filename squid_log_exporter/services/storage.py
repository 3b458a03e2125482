"""
LogStore Class - Handles read-only access to the access log

This module opens the tailed log file and yields complete lines with the
byte offset reached after each one.
"""

import os
from typing import BinaryIO, Iterator, Tuple

from squid_log_exporter.models.data_models import FileStat


class LogStore:
    """
    Read-only access to the Squid access log.
    Responsibilities:
    - Open the log file in binary mode (offsets are byte offsets)
    - Yield complete lines starting at an offset
    - Provide file statistics
    """

    def __init__(self, file_path: str):
        self.file_path = file_path

    def open(self) -> BinaryIO:
        return open(self.file_path, "rb")

    @staticmethod
    def identify(fh: BinaryIO) -> Tuple[int, int]:
        """(inode, size) of an open file; fstat so a concurrent rename can't mix files"""
        st = os.fstat(fh.fileno())
        return st.st_ino, st.st_size

    @staticmethod
    def read_lines(fh: BinaryIO, offset: int) -> Iterator[Tuple[str, int]]:
        """
        Iterate (line, end_offset) from offset onwards.

        A trailing fragment without a newline is still being written by
        Squid; it is not yielded, so the next run picks it up whole.
        """
        fh.seek(offset)
        pos = offset
        for raw in fh:
            if not raw.endswith(b"\n"):
                break
            pos += len(raw)
            yield raw.rstrip(b"\r\n").decode("utf-8", errors="replace"), pos

    def stat(self) -> FileStat:
        """Get file statistics"""
        try:
            st = os.stat(self.file_path)
        except FileNotFoundError:
            return FileStat(
                exists=False,
                path=os.path.abspath(self.file_path),
                size_bytes=0,
                inode=0,
            )
        return FileStat(
            exists=True,
            path=os.path.abspath(self.file_path),
            size_bytes=st.st_size,
            inode=st.st_ino,
        )

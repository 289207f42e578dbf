"""Transfer engine - uploads and downloads with progress and cancellation."""

from sendsafe.client.transfer.base import CancelToken, Transfer
from sendsafe.client.transfer.receiver import FileReceiver, ReceivedFile
from sendsafe.client.transfer.sender import FileSender

__all__ = [
    "CancelToken",
    "FileReceiver",
    "FileSender",
    "ReceivedFile",
    "Transfer",
]

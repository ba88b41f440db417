import asyncio
import os

# Must be set before config is imported anywhere.
os.environ["ENV"] = "dev"
os.environ["GEMINI_API_KEY"] = ""
os.environ["UPLOAD_RATE_LIMIT"] = "1000/minute"
os.environ.pop("FLAG_DUPLICATES", None)
os.environ.pop("EXTRACTION_PROFILE", None)

import pytest

from multipart_ingestor import FileRecord
from prompts import INVOICE_PROFILE

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def make_record(name="receipt.png", data=PNG_BYTES, mime_type="image/png"):
    return FileRecord(name=name, mime_type=mime_type, data=data)


class FakeExtractionClient:
    """
    Stands in for ExtractionClient.

    replies maps filename → reply text, or an exception instance to raise.
    Files not in replies get a single invoice row built from the filename.
    """

    def __init__(self, replies=None, delay=0.0):
        self.replies = replies or {}
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def extract(self, record, prompt):
        self.calls.append(record.name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            reply = self.replies.get(record.name)
            if isinstance(reply, Exception):
                raise reply
            if reply is None:
                reply = (
                    "Invoice Number,Date,Amount,Currency,Merchant,Transaction Type\n"
                    f"{record.name},2024-01-01,1.00,USD,Shop,Card"
                )
            return reply
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_client():
    return FakeExtractionClient()


@pytest.fixture
def invoice_profile():
    return INVOICE_PROFILE

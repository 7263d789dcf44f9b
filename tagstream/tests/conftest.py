import asyncio

import pytest

SAMPLE_CATALOG = b"""<?xml version='1.0' encoding='UTF-8'?>
<taginfo>
<table name='EXIF' g0='Image' g1='IFD0' g2='Image'>
 <desc lang='en'>Exif</desc>
 <tag id='256' name='Width' type='int16u' writable='true' g1='IFD0'>
  <desc lang='en'>Image width</desc>
 </tag>
</table>
</taginfo>
"""


class FakeOutput:
    def __init__(self, chunks, *, hang=False):
        self._chunks = list(chunks)
        self._hang = hang
        self.reads = 0

    async def read(self, n=-1):
        self.reads += 1
        if self._chunks:
            return self._chunks.pop(0)
        if self._hang:
            await asyncio.Event().wait()
        return b""


class FakeProcess:
    """Stands in for a running ``exiftool -listx`` child."""

    def __init__(self, chunks, *, hang=False, exit_code=0, stderr=""):
        self.stdout = FakeOutput(chunks, hang=hang)
        self.returncode = None
        self.exit_code = exit_code
        self.stderr = stderr
        self.killed = False
        self.waited = False

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        self.waited = True
        if self.returncode is None:
            self.returncode = self.exit_code
        return self.returncode

    def stderr_tail(self):
        return self.stderr


@pytest.fixture
def fake_process():
    return FakeProcess


@pytest.fixture
def sample_catalog():
    return SAMPLE_CATALOG

import io
import stat
import sys
import textwrap
from pathlib import Path

import pytest
from PIL import Image


def png_bytes(size=(32, 32), color=(200, 180, 160)) -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', size, color=color).save(buf, format='PNG')
    return buf.getvalue()


@pytest.fixture
def fake_scanimage(tmp_path):
    """Write an executable stand-in for scanimage and return its path."""

    def _make(body: str, name: str = 'scanimage') -> Path:
        script = tmp_path / name
        script.write_text(f'#!{sys.executable}\n' + textwrap.dedent(body), encoding='utf-8')
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


# Writes ``pages`` PNG pages the way scanimage --batch does, then reports an empty feeder.
FEEDER_SCRIPT = '''
import sys
from PIL import Image

pattern = next(a.split('=', 1)[1] for a in sys.argv if a.startswith('--batch='))
pages = {pages}
for number in range(1, pages + 1):
    Image.new('RGB', (40, 60), color=(200, number * 10, 100)).save(pattern % number)
sys.stderr.write('scanimage: sane_start: Document feeder out of documents\\n')
sys.exit({status})
'''

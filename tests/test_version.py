import re
from pathlib import Path

import eldes_monitor

ROOT = Path(__file__).parent.parent


def test_setup_reads_the_package_version():
    setup_source = (ROOT / "setup.py").read_text(encoding="utf-8")
    pattern = re.search(r"re\.search\(r'(.+?)', version_file", setup_source).group(1)
    version_source = (ROOT / "eldes_monitor" / "__version__.py").read_text(encoding="utf-8")

    assert re.search(pattern, version_source).group(1) == eldes_monitor.__version__

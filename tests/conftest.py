import os
import tempfile
from pathlib import Path

# Point application settings at a throwaway location before the package is imported
_TEST_HOME = Path(tempfile.mkdtemp(prefix="diffusion-installer-tests-"))
os.environ["DIFFUSION_INSTALLER_CONFIG_PATH"] = str(_TEST_HOME / "config.yaml")
os.environ["DIFFUSION_INSTALLER_DATA_DIR"] = str(_TEST_HOME / "data")
os.environ.pop("DIFFUSION_INSTALLER_HTTP_PROXY", None)
os.environ.pop("DIFFUSION_INSTALLER_LOG_LEVEL", None)

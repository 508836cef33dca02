# main.py

import os
import random
import warnings
import gc
import numpy as np  # Needed for np.seterr

# Import the high-level components
import config
from pipeline_stages import main_orchestrator

# ==========================================================
# Global Environment and Warning Setup
# ==========================================================
# Ignore common, non-critical warnings from data science libraries
warnings.filterwarnings('ignore', category=UserWarning)
warnings.filterwarnings('ignore', category=FutureWarning)

# Zero-variance columns are handled explicitly by the scaler and correlation pruner
np.seterr(divide='ignore', invalid='ignore')

# ==========================================================
# Set Seeds for Reproducibility
# ==========================================================
os.environ['PYTHONHASHSEED'] = str(config.RANDOM_STATE)
np.random.seed(config.RANDOM_STATE)
random.seed(config.RANDOM_STATE)
# ==========================================================

def main():
    """The main execution function for the entire program."""
    print(f"✅ Data directory: {config.PARENT_DIR}")
    main_orchestrator()

    gc.collect()

if __name__ == "__main__":
    # Just call the main function
    main()

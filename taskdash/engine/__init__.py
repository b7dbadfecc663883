"""taskdash Engine — configuration, errors, logging and the result cache."""

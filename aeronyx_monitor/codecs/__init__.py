"""Wire codecs for the AeroNyx monitor client."""

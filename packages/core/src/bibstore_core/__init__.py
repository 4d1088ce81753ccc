"""Core building blocks of the bibliographic record store."""

"""AuthFlow - SAML 2.0 assertion issuance, validation and SSO flow engine."""

__version__ = "0.1.0"

import logging

logger = logging.getLogger("ldapunit")

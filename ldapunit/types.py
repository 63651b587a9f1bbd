from case_insensitive_dict import CaseInsensitiveDict

# ====================================
# Types
# ====================================

# LDAP records and objects
LDAPData = dict[str, list[bytes]]
CILDAPData = CaseInsensitiveDict[str, list[str]]

# Modlists
ModList = list[tuple[int, str, list[bytes] | None]]

# Configuration
StrSequence = str | list[str] | tuple[str, ...]

"""Managers for the provisioner runtime.

``templates`` owns the template registry; ``lifecycle`` drives deploy and
destroy actions.  Managers raise domain exceptions from
``provisioner.runtime.errors``, never HTTP exceptions -- that translation
is the router's responsibility.
"""

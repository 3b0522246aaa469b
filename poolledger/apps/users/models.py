# poolledger/apps/users/models.py
from django.db import models


class Investor(models.Model):
    ROLE_CHOICES = [
        ("investor", "Investor"),
        ("admin", "Admin"),
    ]
    email = models.EmailField(unique=True, null=True, blank=True)
    display_name = models.CharField(max_length=128, blank=True, default="")
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default="investor")
    # EOA used at signup; the smart wallet (account abstraction) takes precedence
    wallet_address = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    smart_wallet_address = models.CharField(
        max_length=64, null=True, blank=True, db_index=True
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.display_name or self.email or f"investor-{self.pk}"

    @property
    def settlement_address(self):
        """Address that receives redemption proceeds."""
        return self.smart_wallet_address or self.wallet_address

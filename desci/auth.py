import logging
import random
import uuid
from typing import Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import ValidationFailed
from .models import User
from .repository import PaperRepository

logger = logging.getLogger(__name__)

WALLET_AUTH_PLACEHOLDER = "wallet_auth"
USERNAME_ATTEMPTS = 100


def submission_message(title: str, ipfs_cid: str) -> str:
    """投稿时钱包需要签名的消息"""
    return f'I am submitting my research paper "{title}" with IPFS CID {ipfs_cid}'


class SignatureVerifier:
    """以太坊个人签名（EIP-191）的签名与验证"""

    def generate_account(self) -> Dict[str, str]:
        """生成新的钱包账户"""
        account = Account.create()
        return {
            'address': account.address,
            'private_key': '0x' + bytes(account.key).hex(),
        }

    def sign_message(self, private_key: str, message: str) -> str:
        """使用私钥签名消息"""
        signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
        return '0x' + bytes(signed.signature).hex()

    def recover_address(self, message: str, signature: str) -> str:
        return Account.recover_message(encode_defunct(text=message), signature=signature)

    def verify_signature(self, message: str, signature: str, address: str) -> bool:
        """验证签名，任何解析或密码学错误都返回 False"""
        try:
            recovered = self.recover_address(message, signature)
            return recovered.lower() == address.lower()
        except Exception as e:
            logger.warning(f"Error verifying signature: {e}")
            return False


class IdentityResolver:
    """把钱包地址映射到用户，首次出现时创建"""

    def __init__(self, repository: PaperRepository):
        self.repository = repository

    def lookup(self, wallet_address: str) -> Optional[User]:
        return self.repository.get_user_by_wallet_address(wallet_address)

    def resolve(self, wallet_address: str) -> User:
        if not wallet_address:
            raise ValidationFailed("Wallet address is required")

        with self.repository.transaction() as repo:
            user = repo.get_user_by_wallet_address(wallet_address)
            if user is not None:
                logger.info(f"Found existing user with ID {user.id} for wallet {wallet_address}")
                return user

            username = self._new_username()
            user = repo.create_user(username, WALLET_AUTH_PLACEHOLDER, wallet_address=wallet_address)
        logger.info(f"Created new user with ID {user.id} for wallet {wallet_address}")
        return user

    def _new_username(self) -> str:
        for _ in range(USERNAME_ATTEMPTS):
            username = f"researcher_{random.randint(0, 9999)}"
            if self.repository.get_user_by_username(username) is None:
                return username
        # 四位编号用尽时改用更长的后缀
        while True:
            username = f"researcher_{uuid.uuid4().hex[:8]}"
            if self.repository.get_user_by_username(username) is None:
                return username

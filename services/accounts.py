"""
Account linking between Auth0 identities, VirtFusion users and local wallets
"""

import asyncio
import hashlib
import logging
from typing import Dict, Optional, Any

from database import get_or_create_wallet, set_wallet_virtfusion_user
from services.virtfusion import VirtFusionError

logger = logging.getLogger(__name__)


def ext_relation_id_for(auth0_user_id: str) -> str:
    """Stable VirtFusion extRelationId for an Auth0 user"""
    return hashlib.sha256(auth0_user_id.encode('utf-8')).hexdigest()[:24]


async def find_or_create_virtfusion_user(vf, auth0_user_id: str, email: str, name: Optional[str]) -> Optional[Dict[str, Any]]:
    ext_id = ext_relation_id_for(auth0_user_id)
    try:
        existing = await asyncio.to_thread(vf.get_user_by_ext_relation, ext_id)
        if existing:
            return existing
        return await asyncio.to_thread(vf.create_user, name or email.split('@')[0], email, ext_id)
    except VirtFusionError as e:
        logger.error(f"❌ Could not find or create VirtFusion user for {email}: {e}")
        return None


async def link_virtfusion_account(vf, auth0, user: Dict[str, Any]) -> Optional[int]:
    """
    Make sure the Auth0 user has a VirtFusion user and a wallet that points at it

    A stale VirtFusion id stored in Auth0 metadata is cleared and re-linked.
    Returns the VirtFusion user id, or None when linking failed (login still proceeds).
    """
    auth0_user_id = user['user_id']
    stored_id = (user.get('app_metadata') or {}).get('virtfusion_user_id')
    virtfusion_user_id: Optional[int] = None

    if vf is None or not vf.is_available():
        logger.warning("⚠️ VirtFusion unavailable - skipping account linking")
    elif stored_id:
        try:
            existing = await asyncio.to_thread(vf.get_user_by_id, int(stored_id))
        except VirtFusionError as e:
            logger.error(f"❌ VirtFusion lookup for user {stored_id} failed: {e}")
            existing = None
        if existing:
            virtfusion_user_id = int(stored_id)
        else:
            logger.warning(f"⚠️ VirtFusion user {stored_id} missing - clearing stale metadata for {auth0_user_id}")
            await auth0.set_virtfusion_user_id(auth0_user_id, None)

    if virtfusion_user_id is None and vf is not None and vf.is_available():
        created = await find_or_create_virtfusion_user(vf, auth0_user_id, user['email'], user.get('name'))
        if created and created.get('id'):
            virtfusion_user_id = int(created['id'])
            await auth0.set_virtfusion_user_id(auth0_user_id, virtfusion_user_id)

    wallet = await get_or_create_wallet(auth0_user_id)
    if virtfusion_user_id and wallet and wallet.get('virtfusion_user_id') != virtfusion_user_id:
        await set_wallet_virtfusion_user(auth0_user_id, virtfusion_user_id)

    if virtfusion_user_id is None:
        logger.warning(f"⚠️ VirtFusion account not linked for {user['email']}")
    return virtfusion_user_id

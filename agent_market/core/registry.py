"""
Agent registry.

WHAT: Build and own every long-lived component of the marketplace
WHY: One place wires stores, gateways, oracle and agents; tests build their own from explicit Settings
HOW: start() constructs components from settings; shutdown() closes clients and the database
"""

from typing import Optional

from .config import Settings
from .database import Database
from .listing_store import ListingStore
from .payments import PaymentRepository
from .session_archive import SessionArchive
from ..agents.buyer_workflow import BuyerWorkflow
from ..agents.seller_agent import SellerAgent
from ..llm.provider import LLMProvider
from ..llm.provider_factory import create_provider
from ..llm.types import ProviderDisabledError
from ..services.decision_oracle import DecisionOracle, LLMDecisionOracle, RuleBasedOracle
from ..services.discovery import DiscoveryGateway, HttpDiscoveryGateway, StaticDiscoveryGateway
from ..services.settlement import HttpSettlementGateway, LocalLedgerGateway, SettlementGateway
from ..services.settlement_orchestrator import SettlementOrchestrator
from ..services.transport import HttpTransport, InProcessTransport, MessageTransport
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AgentRegistry:
    """
    Owner of the marketplace components.

    Components are None until start() runs.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db: Optional[Database] = None
        self.store: Optional[ListingStore] = None
        self.payments: Optional[PaymentRepository] = None
        self.archive: Optional[SessionArchive] = None
        self.provider: Optional[LLMProvider] = None
        self.oracle: Optional[DecisionOracle] = None
        self.discovery: Optional[DiscoveryGateway] = None
        self.transport: Optional[MessageTransport] = None
        self.local_transport: Optional[InProcessTransport] = None
        self.gateway: Optional[SettlementGateway] = None
        self.orchestrator: Optional[SettlementOrchestrator] = None
        self.sellers: dict[str, SellerAgent] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> "AgentRegistry":
        if self._started:
            return self
        settings = self.settings
        logger.info(f"Starting agent registry (oracle={settings.ORACLE_MODE}, settlement={settings.SETTLEMENT_MODE})")

        self.db = Database(settings.DATABASE_URL, echo=settings.DEBUG)
        self.db.init()
        self.store = ListingStore(self.db)
        self.payments = PaymentRepository(self.db)
        self.archive = SessionArchive(self.db)

        self.oracle = self._build_oracle()
        self.local_transport = InProcessTransport()

        if settings.DISCOVERY_MODE == "http":
            self.discovery = HttpDiscoveryGateway(
                settings.DISCOVERY_REGISTRY_URL,
                timeout=settings.DISCOVERY_TIMEOUT_SECONDS,
                max_retries=settings.EXTERNAL_MAX_RETRIES,
                retry_delay=settings.EXTERNAL_RETRY_DELAY,
            )
            self.transport = HttpTransport(
                api_key=settings.A2A_API_KEY,
                timeout=settings.TRANSPORT_TIMEOUT_SECONDS,
                max_retries=settings.EXTERNAL_MAX_RETRIES,
                retry_delay=settings.EXTERNAL_RETRY_DELAY,
            )
        else:
            self.discovery = StaticDiscoveryGateway()
            self.transport = self.local_transport

        if settings.SETTLEMENT_MODE == "http":
            self.gateway = HttpSettlementGateway(
                settings.SETTLEMENT_BASE_URL,
                api_key=settings.SETTLEMENT_API_KEY,
                timeout=settings.SETTLEMENT_TIMEOUT_SECONDS,
                max_retries=settings.EXTERNAL_MAX_RETRIES,
                retry_delay=settings.EXTERNAL_RETRY_DELAY,
            )
        else:
            self.gateway = LocalLedgerGateway(
                settings.BUYER_ADDRESS,
                opening_balance=settings.LOCAL_LEDGER_OPENING_BALANCE,
                supported_currencies=settings.get_supported_currencies(),
            )

        self.orchestrator = SettlementOrchestrator(
            store=self.store,
            payments=self.payments,
            archive=self.archive,
            gateway=self.gateway,
            transport=self.transport,
            settings=settings,
        )

        self.add_seller(settings.SELLER_AGENT_ID, name=settings.SELLER_NAME, address=settings.SELLER_ADDRESS)
        self._started = True
        logger.info("Agent registry started")
        return self

    def _build_oracle(self) -> DecisionOracle:
        settings = self.settings
        rules = RuleBasedOracle(
            accept_threshold=settings.ACCEPT_THRESHOLD,
            counter_floor=settings.COUNTER_FLOOR,
        )
        if settings.ORACLE_MODE != "llm":
            return rules
        try:
            self.provider = create_provider(settings)
        except ProviderDisabledError as e:
            logger.warning(f"LLM oracle disabled ({e}); using rule-based oracle")
            return rules
        return LLMDecisionOracle(
            self.provider,
            rules,
            temperature=settings.LLM_DEFAULT_TEMPERATURE,
            max_tokens=settings.LLM_DEFAULT_MAX_TOKENS,
        )

    def seller_endpoint(self, agent_id: str) -> str:
        return f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}/api/a2a/{agent_id}"

    def add_seller(self, agent_id: str, *, name: str | None = None, address: str | None = None) -> SellerAgent:
        """Create a seller agent, route its endpoint in-process and publish its card."""
        if agent_id in self.sellers:
            return self.sellers[agent_id]
        seller = SellerAgent(
            agent_id,
            store=self.store,
            oracle=self.oracle,
            payments=self.payments,
            archive=self.archive,
            settings=self.settings,
            name=name,
            address=address,
        )
        endpoint = self.seller_endpoint(agent_id)
        self.local_transport.register(endpoint, seller.handle_message)
        if isinstance(self.discovery, StaticDiscoveryGateway):
            self.discovery.register(seller.agent_card(endpoint))
        self.sellers[agent_id] = seller
        logger.info(f"Seller agent registered: {agent_id} at {endpoint}")
        return seller

    def get_seller(self, agent_id: str) -> Optional[SellerAgent]:
        return self.sellers.get(agent_id)

    def create_buyer_workflow(self, buyer_id: str | None = None) -> BuyerWorkflow:
        return BuyerWorkflow(
            buyer_id or self.settings.BUYER_AGENT_ID,
            discovery=self.discovery,
            oracle=self.oracle,
            transport=self.transport,
            orchestrator=self.orchestrator,
            settings=self.settings,
            buyer_address=self.settings.BUYER_ADDRESS,
        )

    async def shutdown(self) -> None:
        logger.info("Shutting down agent registry")
        for component in (self.provider, self.discovery, self.gateway, self.transport):
            close = getattr(component, "close", None)
            if close is not None:
                await close()
        if self.db is not None:
            self.db.close()
        self._started = False

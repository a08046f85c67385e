# app.py

from flask import Flask, g, request, jsonify
from config import get_config
from extensions import db, migrate
import os
import uuid
from werkzeug.middleware.proxy_fix import ProxyFix
from logging_config import setup_logging, get_logger

# Configure logging as early as possible
setup_logging(app_name="journey-engine", log_level=os.environ.get('LOG_LEVEL', 'INFO'))
logger = get_logger(__name__)


# Configure Sentry for production error tracking
def init_sentry():
    """Initialize Sentry error tracking in production."""
    sentry_dsn = os.environ.get('SENTRY_DSN')
    if sentry_dsn and os.environ.get('FLASK_ENV') == 'production':
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.celery import CeleryIntegration

        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[
                FlaskIntegration(
                    transaction_style='endpoint'
                ),
                SqlalchemyIntegration(),
                CeleryIntegration()
            ],
            traces_sample_rate=0.1,
            environment=os.environ.get('FLASK_ENV', 'development'),
            release=os.environ.get('GIT_SHA', 'unknown')
        )
        logger.info("Sentry error tracking initialized")


init_sentry()


def create_app(config_name=None, test_config=None):
    """Create and configure an instance of the Flask application."""
    app = Flask(__name__)

    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Initialize app with config
    config_class.init_app(app)

    if test_config:
        app.config.update(test_config)

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    db.init_app(app)
    migrate.init_app(app, db)

    from services.journey_settings import JourneySettings
    app.journey_settings = JourneySettings.from_config(app.config)

    app.services = _build_registry(app)

    # Add request tracking middleware
    @app.before_request
    def before_request():
        g.request_id = str(uuid.uuid4())
        logger.info("Request started",
                    request_id=g.request_id,
                    method=request.method,
                    path=request.path)

    @app.after_request
    def after_request(response):
        logger.info("Request completed",
                    request_id=getattr(g, 'request_id', None),
                    status_code=response.status_code)
        return response

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        if exception is not None:
            db.session.rollback()
        db.session.remove()

    # Global error handlers
    @app.errorhandler(500)
    def internal_error(error):
        logger.error("Internal server error",
                     request_id=getattr(g, 'request_id', None),
                     error=str(error))
        return jsonify({'error': 'Internal server error'}), 500

    @app.errorhandler(404)
    def not_found_error(error):
        logger.warning("Page not found",
                       request_id=getattr(g, 'request_id', None),
                       path=request.path)
        return jsonify({'error': 'Not found'}), 404

    @app.route('/health')
    def health_check():
        """Health check endpoint for monitoring"""
        from sqlalchemy import text
        from sqlalchemy.exc import SQLAlchemyError
        health_status = {
            'status': 'healthy',
            'service': 'journey-engine'
        }

        try:
            db.session.execute(text('SELECT 1'))
            health_status['database'] = 'connected'
        except SQLAlchemyError as e:
            health_status['database'] = 'error'
            health_status['status'] = 'degraded'
            logger.error("Health check database error", error=str(e))

        return jsonify(health_status), 200 if health_status['status'] == 'healthy' else 503

    return app


def _build_registry(app):
    """Register every repository and journey service with its dependencies"""
    from services.service_registry_enhanced import create_enhanced_registry
    registry = create_enhanced_registry()
    settings = app.journey_settings
    config = app.config

    # db.session is a scoped session; the proxy is safe to share
    registry.register_singleton('db_session', lambda: db.session)
    registry.register_singleton('journey_settings', lambda: settings)

    # Repositories
    for name, factory in _REPOSITORY_FACTORIES.items():
        registry.register_factory(name, factory, dependencies=['db_session'])

    # Collaborators
    registry.register_factory(
        'openphone_api_client',
        lambda: _create_openphone_api_client(config)
    )

    registry.register_factory(
        'compliance_gate',
        lambda contact_flag_repository: _create_compliance_gate(contact_flag_repository),
        dependencies=['contact_flag_repository']
    )

    registry.register_factory(
        'messaging_gateway',
        lambda openphone_api_client: _create_messaging_gateway(openphone_api_client, config),
        dependencies=['openphone_api_client']
    )

    registry.register_factory(
        'telephony_gateway',
        lambda: _create_telephony_gateway(config)
    )

    registry.register_factory(
        'audio_renderer',
        lambda: _create_audio_renderer(config)
    )

    registry.register_factory(
        'message_renderer',
        lambda campaign_template_repository: _create_message_renderer(campaign_template_repository),
        dependencies=['campaign_template_repository']
    )

    # Node helpers
    registry.register_factory(
        'condition_evaluator',
        lambda activity_repository, campaign_membership_repository: _create_condition_evaluator(
            activity_repository, campaign_membership_repository
        ),
        dependencies=['activity_repository', 'campaign_membership_repository']
    )

    registry.register_factory(
        'number_pool',
        lambda number_pool_repository, activity_repository: _create_number_pool_service(
            number_pool_repository, activity_repository
        ),
        dependencies=['number_pool_repository', 'activity_repository']
    )

    registry.register_factory(
        'journey_audio',
        lambda voice_template_repository, generated_audio_repository, audio_renderer: _create_journey_audio_service(
            voice_template_repository, generated_audio_repository, audio_renderer, config
        ),
        dependencies=['voice_template_repository', 'generated_audio_repository', 'audio_renderer']
    )

    registry.register_factory(
        'journey_webhook_client',
        lambda stored_webhook_repository, contact_repository, journey_settings: _create_webhook_client(
            stored_webhook_repository, contact_repository, journey_settings
        ),
        dependencies=['stored_webhook_repository', 'contact_repository', 'journey_settings']
    )

    # Engine
    registry.register_factory(
        'node_executor',
        lambda **deps: _create_node_executor(**deps),
        dependencies=[
            'contact_repository', 'tenant_repository', 'campaign_repository',
            'campaign_membership_repository', 'activity_repository', 'condition_evaluator',
            'number_pool', 'journey_audio', 'journey_webhook_client', 'compliance_gate',
            'messaging_gateway', 'telephony_gateway', 'message_renderer', 'journey_settings'
        ]
    )

    registry.register_factory(
        'journey_scheduler',
        lambda journey_node_execution_repository, tenant_repository, activity_repository, journey_settings:
            _create_journey_scheduler(journey_node_execution_repository, tenant_repository,
                                      activity_repository, journey_settings),
        dependencies=['journey_node_execution_repository', 'tenant_repository',
                      'activity_repository', 'journey_settings']
    )

    registry.register_factory(
        'journey_execution',
        lambda **deps: _create_journey_execution_service(**deps),
        dependencies=[
            'journey_repository', 'journey_node_repository', 'journey_contact_repository',
            'journey_node_execution_repository', 'node_executor', 'journey_scheduler', 'journey_settings'
        ]
    )

    registry.register_factory(
        'execution_rules',
        lambda execution_rules_repository, tenant_repository, journey_contact_repository, journey_settings:
            _create_execution_rules_service(execution_rules_repository, tenant_repository,
                                            journey_contact_repository, journey_settings),
        dependencies=['execution_rules_repository', 'tenant_repository',
                      'journey_contact_repository', 'journey_settings']
    )

    registry.register_factory(
        'removal_criteria',
        lambda: _create_removal_criteria_service()
    )

    registry.register_factory(
        'call_completion',
        lambda **deps: _create_call_completion_service(**deps),
        dependencies=[
            'activity_repository', 'journey_node_execution_repository', 'journey_repository',
            'journey_contact_repository', 'journey_execution', 'removal_criteria', 'journey_settings'
        ]
    )

    registry.register_factory(
        'journey_poller',
        lambda **deps: _create_journey_poller(**deps),
        dependencies=[
            'journey_node_execution_repository', 'journey_contact_repository',
            'execution_rules', 'journey_execution', 'journey_settings'
        ]
    )

    registry.register_factory(
        'journey',
        lambda **deps: _create_journey_service(**deps),
        dependencies=[
            'journey_repository', 'journey_node_repository', 'journey_contact_repository',
            'contact_repository', 'journey_node_execution_repository', 'journey_execution',
            'execution_rules', 'removal_criteria'
        ]
    )

    # Validate all dependencies are registered
    errors = registry.validate_dependencies()
    if errors:
        for error in errors:
            logger.error("Service dependency error", error=error)
        raise RuntimeError(f"Service dependency errors: {errors}")

    if app.debug:
        logger.debug("Service initialization order", order=registry.get_initialization_order())

    return registry


# Repository Factory Functions

def _repository_factory(module_name, class_name):
    def factory(db_session):
        import importlib
        module = importlib.import_module(f"repositories.{module_name}")
        return getattr(module, class_name)(session=db_session)
    return factory


_REPOSITORY_FACTORIES = {
    'tenant_repository': _repository_factory('tenant_repository', 'TenantRepository'),
    'contact_repository': _repository_factory('contact_repository', 'ContactRepository'),
    'contact_flag_repository': _repository_factory('contact_flag_repository', 'ContactFlagRepository'),
    'activity_repository': _repository_factory('activity_repository', 'ActivityRepository'),
    'campaign_repository': _repository_factory('campaign_repository', 'CampaignRepository'),
    'campaign_membership_repository': _repository_factory('campaign_membership_repository',
                                                          'CampaignMembershipRepository'),
    'campaign_template_repository': _repository_factory('campaign_template_repository',
                                                        'CampaignTemplateRepository'),
    'number_pool_repository': _repository_factory('number_pool_repository', 'NumberPoolRepository'),
    'stored_webhook_repository': _repository_factory('stored_webhook_repository', 'StoredWebhookRepository'),
    'voice_template_repository': _repository_factory('audio_repository', 'VoiceTemplateRepository'),
    'generated_audio_repository': _repository_factory('audio_repository', 'GeneratedAudioRepository'),
    'execution_rules_repository': _repository_factory('execution_rules_repository', 'ExecutionRulesRepository'),
    'journey_repository': _repository_factory('journey_repository', 'JourneyRepository'),
    'journey_node_repository': _repository_factory('journey_node_repository', 'JourneyNodeRepository'),
    'journey_contact_repository': _repository_factory('journey_contact_repository', 'JourneyContactRepository'),
    'journey_node_execution_repository': _repository_factory('journey_node_execution_repository',
                                                             'JourneyNodeExecutionRepository'),
}


# Service Factory Functions
# These are only called when the service is first requested

def _create_openphone_api_client(config):
    from services.openphone_api_client import OpenPhoneAPIClient
    logger.info("Initializing OpenPhoneAPIClient")
    return OpenPhoneAPIClient(api_key=config.get('OPENPHONE_API_KEY'))


def _create_compliance_gate(contact_flag_repository):
    from services.journey_collaborators import ContactFlagComplianceGate
    return ContactFlagComplianceGate(contact_flag_repository)


def _create_messaging_gateway(openphone_api_client, config):
    from services.journey_collaborators import OpenPhoneMessagingGateway
    return OpenPhoneMessagingGateway(openphone_api_client,
                                     default_from_number=config.get('OPENPHONE_PHONE_NUMBER'))


def _create_telephony_gateway(config):
    from services.journey_collaborators import HttpTelephonyGateway
    return HttpTelephonyGateway(config.get('TELEPHONY_API_URL'), config.get('TELEPHONY_API_KEY'))


def _create_audio_renderer(config):
    from services.journey_collaborators import HttpAudioRenderer
    if not config.get('TTS_API_URL'):
        logger.warning("TTS_API_URL not configured, voice templates cannot be rendered")
        return None
    return HttpAudioRenderer(config.get('TTS_API_URL'), config.get('TTS_API_KEY'))


def _create_message_renderer(campaign_template_repository):
    from services.journey_collaborators import StoredTemplateRenderer
    return StoredTemplateRenderer(campaign_template_repository)


def _create_condition_evaluator(activity_repository, campaign_membership_repository):
    from services.journey_condition_evaluator import JourneyConditionEvaluator
    return JourneyConditionEvaluator(activity_repository, campaign_membership_repository)


def _create_number_pool_service(number_pool_repository, activity_repository):
    from services.number_pool_service import NumberPoolService
    return NumberPoolService(number_pool_repository, activity_repository)


def _create_journey_audio_service(voice_template_repository, generated_audio_repository, audio_renderer, config):
    from services.journey_audio_service import JourneyAudioService
    return JourneyAudioService(voice_template_repository, generated_audio_repository, audio_renderer,
                               storage_dir=config.get('AUDIO_STORAGE_DIR') or 'generated_audio')


def _create_webhook_client(stored_webhook_repository, contact_repository, journey_settings):
    from services.journey_webhook_client import JourneyWebhookClient
    return JourneyWebhookClient(
        stored_webhook_repository,
        contact_repository,
        default_timeout_ms=journey_settings.webhook_timeout_ms,
        default_retries=journey_settings.webhook_retries,
        default_retry_delay_ms=journey_settings.webhook_retry_delay_ms,
    )


def _create_node_executor(contact_repository, tenant_repository, campaign_repository,
                          campaign_membership_repository, activity_repository, condition_evaluator,
                          number_pool, journey_audio, journey_webhook_client, compliance_gate,
                          messaging_gateway, telephony_gateway, message_renderer, journey_settings):
    from services.journey_node_executor import JourneyNodeExecutor
    logger.info("Initializing JourneyNodeExecutor")
    return JourneyNodeExecutor(
        contact_repository=contact_repository,
        tenant_repository=tenant_repository,
        campaign_repository=campaign_repository,
        campaign_membership_repository=campaign_membership_repository,
        activity_repository=activity_repository,
        condition_evaluator=condition_evaluator,
        number_pool_service=number_pool,
        audio_service=journey_audio,
        webhook_client=journey_webhook_client,
        compliance_gate=compliance_gate,
        messaging_gateway=messaging_gateway,
        telephony_gateway=telephony_gateway,
        message_renderer=message_renderer,
        settings=journey_settings,
    )


def _create_journey_scheduler(journey_node_execution_repository, tenant_repository,
                              activity_repository, journey_settings):
    from services.journey_scheduler_service import JourneySchedulerService
    return JourneySchedulerService(journey_node_execution_repository, tenant_repository,
                                   activity_repository, settings=journey_settings)


def _create_journey_execution_service(journey_repository, journey_node_repository, journey_contact_repository,
                                      journey_node_execution_repository, node_executor, journey_scheduler,
                                      journey_settings):
    from services.journey_execution_service import JourneyExecutionService
    logger.info("Initializing JourneyExecutionService")
    return JourneyExecutionService(
        journey_repository=journey_repository,
        journey_node_repository=journey_node_repository,
        journey_contact_repository=journey_contact_repository,
        execution_repository=journey_node_execution_repository,
        node_executor=node_executor,
        scheduler=journey_scheduler,
        settings=journey_settings,
    )


def _create_execution_rules_service(execution_rules_repository, tenant_repository,
                                    journey_contact_repository, journey_settings):
    from services.cache_service import CacheService
    from services.execution_rules_service import ExecutionRulesService
    cache = CacheService(default_ttl=journey_settings.cache_ttl_seconds, max_size=500, name='execution_rules')
    return ExecutionRulesService(execution_rules_repository, tenant_repository,
                                 journey_contact_repository, cache=cache)


def _create_removal_criteria_service():
    from services.removal_criteria_service import RemovalCriteriaService
    return RemovalCriteriaService()


def _create_call_completion_service(activity_repository, journey_node_execution_repository, journey_repository,
                                    journey_contact_repository, journey_execution, removal_criteria,
                                    journey_settings):
    from services.call_completion_service import CallCompletionService
    return CallCompletionService(
        activity_repository=activity_repository,
        execution_repository=journey_node_execution_repository,
        journey_repository=journey_repository,
        journey_contact_repository=journey_contact_repository,
        execution_service=journey_execution,
        removal_criteria_service=removal_criteria,
        settings=journey_settings,
    )


def _create_journey_poller(journey_node_execution_repository, journey_contact_repository,
                           execution_rules, journey_execution, journey_settings):
    from services.journey_poller_service import JourneyPollerService
    logger.info("Initializing JourneyPollerService")
    return JourneyPollerService(
        execution_repository=journey_node_execution_repository,
        journey_contact_repository=journey_contact_repository,
        execution_rules_service=execution_rules,
        execution_service=journey_execution,
        settings=journey_settings,
    )


def _create_journey_service(journey_repository, journey_node_repository, journey_contact_repository,
                            contact_repository, journey_node_execution_repository, journey_execution,
                            execution_rules, removal_criteria):
    from services.journey_service import JourneyService
    return JourneyService(
        journey_repository=journey_repository,
        journey_node_repository=journey_node_repository,
        journey_contact_repository=journey_contact_repository,
        contact_repository=contact_repository,
        execution_repository=journey_node_execution_repository,
        execution_service=journey_execution,
        execution_rules_service=execution_rules,
        removal_criteria_service=removal_criteria,
    )

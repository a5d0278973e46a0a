"""Shared constants for the Keycloak organization sync."""

API_VERSION = "backstage.io/v1beta1"
DEFAULT_NAMESPACE = "default"

KEYCLOAK_ID_ANNOTATION = "keycloak.org/id"
KEYCLOAK_REALM_ANNOTATION = "keycloak.org/realm"
ANNOTATION_LOCATION = "backstage.io/managed-by-location"
ANNOTATION_ORIGIN_LOCATION = "backstage.io/managed-by-origin-location"

KEYCLOAK_BRIEF_REPRESENTATION_DEFAULT = True

# Relation types derived from entity specs
RELATION_MEMBER_OF = "memberOf"
RELATION_HAS_MEMBER = "hasMember"
RELATION_CHILD_OF = "childOf"
RELATION_PARENT_OF = "parentOf"

# Event bus topic the router publishes Keycloak admin events on
KEYCLOAK_TOPIC = "keycloak"

TOPIC_USER_CREATE = "admin.USER-CREATE"
TOPIC_USER_DELETE = "admin.USER-DELETE"
TOPIC_USER_UPDATE = "admin.USER-UPDATE"
TOPIC_USER_ADD_GROUP = "admin.GROUP_MEMBERSHIP-CREATE"
TOPIC_USER_REMOVE_GROUP = "admin.GROUP_MEMBERSHIP-DELETE"
TOPIC_GROUP_CREATE = "admin.GROUP-CREATE"
TOPIC_GROUP_DELETE = "admin.GROUP-DELETE"
TOPIC_GROUP_UPDATE = "admin.GROUP-UPDATE"

USER_TOPICS = frozenset({TOPIC_USER_CREATE, TOPIC_USER_DELETE, TOPIC_USER_UPDATE})
MEMBERSHIP_TOPICS = frozenset({TOPIC_USER_ADD_GROUP, TOPIC_USER_REMOVE_GROUP})
GROUP_TOPICS = frozenset({TOPIC_GROUP_CREATE, TOPIC_GROUP_DELETE, TOPIC_GROUP_UPDATE})

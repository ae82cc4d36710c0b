from app.dms.rbac import (
    ADMIN,
    APPROVER,
    AUTHOR,
    QHSE,
    NO_CAPABILITIES,
    capabilities_for,
    has_all_roles,
    has_any_role,
    preferred_role,
)


def test_capabilities_follow_roles():
    caps = capabilities_for([APPROVER, "Viewer"])
    assert caps.is_approver
    assert not caps.is_admin
    assert not caps.can_publish
    assert caps.roles == frozenset({APPROVER, "Viewer"})
    assert caps.to_dict() == {"isAdmin": False, "isQHSE": False, "isApprover": True, "isAuthor": False}


def test_publisher_capability():
    assert capabilities_for([QHSE]).can_publish
    assert capabilities_for([ADMIN]).can_publish
    assert not capabilities_for([AUTHOR, APPROVER]).can_publish


def test_no_roles_means_no_capabilities():
    assert capabilities_for([]) == NO_CAPABILITIES
    assert capabilities_for(["", None]) == NO_CAPABILITIES


def test_preferred_role_priority():
    assert preferred_role([AUTHOR, ADMIN, APPROVER]) == ADMIN
    assert preferred_role([AUTHOR, QHSE]) == QHSE
    assert preferred_role(["Viewer", "Auditor"]) == "Viewer"
    assert preferred_role({"Viewer", "Auditor"}) == "Auditor"
    assert preferred_role([]) is None


def test_role_set_predicates():
    roles = [AUTHOR, APPROVER]
    assert has_any_role(roles, [ADMIN, APPROVER])
    assert not has_any_role(roles, [ADMIN])
    assert has_all_roles(roles, [AUTHOR])
    assert not has_all_roles(roles, [AUTHOR, ADMIN])
    assert has_all_roles(roles, [])

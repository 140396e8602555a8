from flask import jsonify
from sitetree.domain.exceptions import SiteStructureError

def register_error_handlers(app):
    @app.errorhandler(SiteStructureError)
    def handle_site_structure_error(error):
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response
